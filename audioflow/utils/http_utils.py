import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from tqdm.asyncio import tqdm as tqdm_asyncio

from audioflow.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Transient upstream failure (timeout, connection error or 5xx) that is worth retrying."""

    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient with the configured timeout.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments (e.g. ``transport`` in tests).

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("timeout", settings.http_timeout)
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(DownloadError),
    reraise=True,
)
async def request_with_retry(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    """
    Send an idempotent request, retrying timeouts, connection errors and 5xx responses.

    Any other status is returned to the caller untouched so it can be mapped
    to a domain error.

    Raises:
        DownloadError: If the request still fails after retries.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException:
        logger.warning(f"Timeout while requesting {url}")
        raise DownloadError(504, f"Timeout while requesting {url}")
    except httpx.TransportError as e:
        logger.warning(f"Transport error while requesting {url}: {e}")
        raise DownloadError(502, f"Error requesting {url}: {e}")

    if response.status_code >= 500:
        logger.warning(f"HTTP error {response.status_code} while requesting {url}")
        raise DownloadError(response.status_code, f"HTTP error {response.status_code} while requesting {url}")
    return response


class ResponseStream:
    """
    Single-pass async iterator over a streamed response body.

    Owns the response: ``aclose`` releases the connection whether or not
    iteration ever started, and exhausting the body closes it as well.
    """

    def __init__(self, response: httpx.Response, chunk_size: int, total_size: int = 0, desc: str = "Downloading"):
        self.response = response
        self._chunks = response.aiter_bytes(chunk_size)
        self._progress_bar = None
        if settings.enable_streaming_progress:
            self._progress_bar = tqdm_asyncio(
                total=total_size or None,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=desc,
                ncols=100,
                mininterval=1,
            )

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> bytes:
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        if self._progress_bar is not None:
            self._progress_bar.update(len(chunk))
        return chunk

    async def aclose(self) -> None:
        if self._progress_bar is not None:
            self._progress_bar.close()
            self._progress_bar = None
        try:
            await self._chunks.aclose()
        finally:
            await self.response.aclose()


def format_bytes(size) -> str:
    power = 2**10
    n = 0
    units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
    while size > power:
        size /= power
        n += 1
    return f"{size:.2f} {units[n]}"
