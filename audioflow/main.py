import logging
from contextlib import asynccontextmanager

import anyio
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, APIKeyQuery

from audioflow.configs import settings
from audioflow.routes import convert_router
from audioflow.service import create_conversion_service
from audioflow.utils.memory_monitor import run_memory_logger

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
if settings.verbose_logs:
    logging.getLogger("audioflow").setLevel(logging.DEBUG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service, client = create_conversion_service(settings)
    app.state.conversion_service = service
    logger.info(
        "Conversion service ready (max jobs %d, memory limit %s, ffmpeg %s)",
        settings.max_concurrent_jobs,
        f"{settings.max_memory_mb}MB" if settings.max_memory_mb > 0 else "unlimited",
        settings.ffmpeg_path,
    )
    async with client, anyio.create_task_group() as tg:
        if settings.memory_log_interval_ms > 0:
            tg.start_soon(run_memory_logger, settings.memory_log_interval_ms)
        yield
        tg.cancel_scope.cancel()


app = FastAPI(title="audioflow", lifespan=lifespan)
api_password_query = APIKeyQuery(name="api_password", auto_error=False)
api_password_header = APIKeyHeader(name="api_password", auto_error=False)


async def verify_api_key(api_key: str = Security(api_password_query), api_key_alt: str = Security(api_password_header)):
    """
    Verifies the API key for the request.

    Args:
        api_key (str): The API key to validate.
        api_key_alt (str): The alternative API key to validate.

    Raises:
        HTTPException: If the API key is invalid.
    """
    if not settings.api_password:
        return

    if api_key == settings.api_password or api_key_alt == settings.api_password:
        return

    raise HTTPException(status_code=403, detail="Could not validate credentials")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    first = errors[0] if errors else {}
    field = ".".join(first.get("loc", [])[1:]) or "body"
    message = first.get("msg", "Invalid request").removeprefix("Value error, ")
    if first.get("type") == "missing":
        message = f"{field} is required"
    logger.warning(f"Rejected invalid request: {message}")
    return JSONResponse(status_code=400, content={"error": message, "details": errors})


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


app.include_router(convert_router, tags=["convert"], dependencies=[Depends(verify_api_key)])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080, log_level="info")


if __name__ == "__main__":
    run()
