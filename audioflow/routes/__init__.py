from .convert import convert_router, get_conversion_service

__all__ = ["convert_router", "get_conversion_service"]
