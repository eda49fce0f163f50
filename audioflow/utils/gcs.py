"""
Google Cloud Storage destination for converted audio.

Uploads use the JSON API resumable protocol so that the object is written
chunk by chunk without ever holding the whole file:

- opening a writer creates an upload session that already carries the
  object's content type and custom metadata;
- ``write`` buffers at most one upload chunk (a multiple of 256 KiB) and
  PUTs it as soon as more data follows it;
- ``finalize`` PUTs the remainder together with the total size, which is
  the only request that commits the object;
- ``abort`` deletes the session, so a failed pipeline never leaves a
  partial object behind.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any, Optional
from urllib.parse import quote

import httpx

from audioflow.const import GCS_API_URL, GCS_CHUNK_GRANULARITY, GCS_SCOPES, GCS_UPLOAD_URL
from audioflow.utils.google_clients import GoogleAPIError, ServiceAccountCredentials, raise_for_google_status
from audioflow.utils.http_utils import request_with_retry

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"bytes=0-(\d+)")


class StorageError(GoogleAPIError):
    """Unexpected response while uploading to Cloud Storage."""


def normalize_chunk_size(size: int) -> int:
    """Round ``size`` down to a multiple of 256 KiB (at least one unit)."""
    return max(GCS_CHUNK_GRANULARITY, (size // GCS_CHUNK_GRANULARITY) * GCS_CHUNK_GRANULARITY)


class GCSResumableWriter:
    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: ServiceAccountCredentials,
        bucket: str,
        object_name: str,
        content_type: str,
        metadata: Mapping[str, str],
        chunk_size: int,
    ):
        self.client = client
        self.credentials = credentials
        self.bucket = bucket
        self.object_name = object_name
        self.content_type = content_type
        self.metadata = dict(metadata)
        self.chunk_size = normalize_chunk_size(chunk_size)
        self.session_url: Optional[str] = None
        self.offset = 0
        self._buffer = bytearray()
        self._closed = False

    @property
    def resource(self) -> str:
        return f"gs://{self.bucket}/{self.object_name}"

    async def _headers(self) -> dict:
        token = await self.credentials.get_access_token(GCS_SCOPES)
        return {"Authorization": f"Bearer {token}"}

    async def start(self) -> "GCSResumableWriter":
        """Create the resumable upload session."""
        headers = await self._headers()
        headers["X-Upload-Content-Type"] = self.content_type
        response = await request_with_retry(
            self.client,
            "POST",
            f"{GCS_UPLOAD_URL}/b/{quote(self.bucket, safe='')}/o",
            params={"uploadType": "resumable"},
            json={"name": self.object_name, "contentType": self.content_type, "metadata": self.metadata},
            headers=headers,
        )
        raise_for_google_status(response, self.resource)
        self.session_url = response.headers.get("Location")
        if not self.session_url:
            raise StorageError(response.status_code, f"No upload session returned for {self.resource}", self.resource)
        logger.debug("Upload session created for %s", self.resource)
        return self

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageError(0, f"Upload to {self.resource} is already closed", self.resource)

    async def _put(self, data: bytes, total: Optional[int]) -> httpx.Response:
        end = self.offset + len(data) - 1
        if data:
            content_range = f"bytes {self.offset}-{end}/{total if total is not None else '*'}"
        else:
            content_range = f"bytes */{total}"
        headers = await self._headers()
        headers["Content-Range"] = content_range
        return await self.client.put(self.session_url, content=data, headers=headers, follow_redirects=False)

    async def _flush_chunk(self) -> None:
        data = bytes(self._buffer[: self.chunk_size])
        response = await self._put(data, None)
        if response.status_code != 308:
            raise_for_google_status(response, self.resource)
            raise StorageError(
                response.status_code, f"Unexpected status {response.status_code} for {self.resource}", self.resource
            )

        # The service reports how much it persisted; anything beyond is resent.
        match = _RANGE_RE.match(response.headers.get("Range", ""))
        persisted = int(match.group(1)) + 1 if match else 0
        consumed = persisted - self.offset
        if consumed <= 0:
            raise StorageError(308, f"Upload to {self.resource} made no progress", self.resource)
        del self._buffer[:consumed]
        self.offset = persisted

    async def write(self, chunk: bytes) -> None:
        self._ensure_open()
        self._buffer.extend(chunk)
        # Keep at least one byte back: only finalize may send the last chunk.
        while len(self._buffer) > self.chunk_size:
            await self._flush_chunk()

    async def finalize(self) -> dict[str, Any]:
        self._ensure_open()
        total = self.offset + len(self._buffer)
        response = await self._put(bytes(self._buffer), total)
        raise_for_google_status(response, self.resource)
        self._closed = True
        self._buffer.clear()
        self.offset = total
        logger.debug("Upload committed for %s (%d bytes)", self.resource, total)
        return response.json()

    async def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        if not self.session_url:
            return
        response = await self.client.delete(self.session_url, headers=await self._headers())
        # A cancelled session answers 499.
        logger.debug("Upload session for %s cancelled (status %s)", self.resource, response.status_code)


class GCSObjectSink:
    """A single Cloud Storage object as a pipeline destination."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: ServiceAccountCredentials,
        bucket: str,
        object_name: str,
        chunk_size: int = 262_144,
    ):
        self.client = client
        self.credentials = credentials
        self.bucket = bucket
        self.object_name = object_name
        self.chunk_size = chunk_size

    @property
    def name(self) -> str:
        return f"gs://{self.bucket}/{self.object_name}"

    async def get_metadata(self) -> dict[str, Any] | None:
        token = await self.credentials.get_access_token(GCS_SCOPES)
        response = await request_with_retry(
            self.client,
            "GET",
            f"{GCS_API_URL}/b/{quote(self.bucket, safe='')}/o/{quote(self.object_name, safe='')}",
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 404:
            return None
        raise_for_google_status(response, self.name)
        return response.json()

    async def exists(self) -> bool:
        return await self.get_metadata() is not None

    async def open_writer(self, content_type: str, metadata: Mapping[str, str]) -> GCSResumableWriter:
        writer = GCSResumableWriter(
            self.client,
            self.credentials,
            self.bucket,
            self.object_name,
            content_type,
            metadata,
            self.chunk_size,
        )
        return await writer.start()
