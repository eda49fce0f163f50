import logging

from fastapi.responses import JSONResponse

from .configs import Policy, settings
from .schemas import AdmissionStatus, ProcessVideoRequest
from .service import ConversionService
from .transcoder.errors import AdmissionTimeout, EgressError, IngestError, TranscodeError
from .utils.gcs import StorageError
from .utils.google_clients import (
    AuthorizationError,
    CredentialsError,
    GoogleAPIError,
    NotFoundError,
    QuotaExceeded,
)
from .utils.http_utils import DownloadError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, error: str, details: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "details": details}, headers=headers)


def _retry_after_seconds(policy: Policy) -> str:
    return str(max(1, round(policy.poll_interval * 4)))


def handle_exceptions(exception: Exception, policy: Policy | None = None) -> JSONResponse:
    """
    Map an exception raised while converting to an HTTP response.

    Args:
        exception (Exception): The exception that was raised.
        policy (Policy, optional): Admission limits used for the Retry-After hint. Defaults to the configured ones.

    Returns:
        JSONResponse: A response with ``error`` and ``details`` fields.
    """
    if isinstance(exception, AdmissionTimeout):
        logger.warning(f"Admission timed out: {exception}")
        retry_after = _retry_after_seconds(policy or Policy.from_settings(settings))
        return _error_response(503, "Server busy, try again later", str(exception), {"Retry-After": retry_after})
    elif isinstance(exception, NotFoundError):
        logger.warning(f"Resource not found: {exception}")
        return _error_response(404, "Not found", str(exception))
    elif isinstance(exception, QuotaExceeded):
        logger.error(f"Quota exceeded: {exception}")
        return _error_response(507, "Quota exceeded", str(exception))
    elif isinstance(exception, AuthorizationError):
        logger.error(f"Authorization error: {exception}")
        return _error_response(403, "Not authorized", str(exception))
    elif isinstance(exception, ValueError):
        logger.warning(f"Invalid request: {exception}")
        return _error_response(400, "Invalid request", str(exception))
    elif isinstance(exception, CredentialsError):
        logger.error(f"Credentials error: {exception}")
        return _error_response(500, "Server credentials misconfigured", str(exception))
    elif isinstance(exception, (IngestError, EgressError, StorageError, GoogleAPIError, DownloadError)):
        logger.error(f"Upstream service error: {exception}")
        return _error_response(502, "Upstream service error", str(exception))
    elif isinstance(exception, TranscodeError):
        logger.error(f"Transcoding failed: {exception}")
        return _error_response(500, "Transcoding failed", str(exception))
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return _error_response(500, "Internal server error", str(exception))


async def handle_process_video(params: ProcessVideoRequest, service: ConversionService):
    """
    Handle a conversion request.

    Fails fast with 503 when every slot is taken, so callers do not queue
    behind a long-running conversion inside the HTTP request.
    """
    logger.info(f"Received conversion request for file {params.file_id} as {params.user_email}")
    if not service.admission.has_capacity():
        logger.warning(
            f"Rejecting request: no job slot available ({service.admission.held}/{service.admission.max_concurrent})"
        )
        return _error_response(
            503,
            "Server busy, try again later",
            f"{service.admission.held} of {service.admission.max_concurrent} conversion slots in use",
            {"Retry-After": _retry_after_seconds(service.admission.policy)},
        )

    try:
        return await service.convert(params.file_id, params.user_email, params.bucket)
    except Exception as e:
        return handle_exceptions(e, service.admission.policy)


def get_admission_status(service: ConversionService) -> AdmissionStatus:
    admission = service.admission
    ceiling = admission.policy.memory_ceiling
    return AdmissionStatus(
        active_jobs=admission.held,
        max_concurrent_jobs=admission.max_concurrent,
        has_capacity=admission.has_capacity(),
        memory_usage_mb=round(admission.memory_usage() / 1024 / 1024, 1),
        memory_limit_mb=None if ceiling == float("inf") else round(ceiling / 1024 / 1024, 1),
    )
