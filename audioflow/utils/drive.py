import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from audioflow.const import DRIVE_API_URL, DRIVE_METADATA_FIELDS, DRIVE_SCOPES
from audioflow.utils.google_clients import ServiceAccountCredentials, raise_for_google_status
from audioflow.utils.http_utils import ResponseStream, request_with_retry

logger = logging.getLogger(__name__)


@dataclass
class SourceMetadata:
    id: str
    name: str
    parents: list[str] = field(default_factory=list)
    mime_type: Optional[str] = None
    size: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "SourceMetadata":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            parents=data.get("parents") or [],
            mime_type=data.get("mimeType"),
            size=int(data.get("size") or 0),
        )


class DriveSource:
    """
    Reads Google Drive files on behalf of an impersonated user.

    ``open_stream`` returns a single-pass async iterator over the file content
    that keeps at most one chunk in memory.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: ServiceAccountCredentials,
        user_email: str,
        chunk_size: int = 262_144,
    ):
        self.client = client
        self.credentials = credentials
        self.user_email = user_email
        self.chunk_size = chunk_size

    async def _headers(self) -> dict:
        token = await self.credentials.get_access_token(DRIVE_SCOPES, subject=self.user_email)
        return {"Authorization": f"Bearer {token}"}

    async def get_metadata(self, file_id: str) -> SourceMetadata:
        logger.debug("Fetching file metadata for: %s", file_id)
        response = await request_with_retry(
            self.client,
            "GET",
            f"{DRIVE_API_URL}/files/{file_id}",
            params={"fields": DRIVE_METADATA_FIELDS, "supportsAllDrives": "true"},
            headers=await self._headers(),
        )
        raise_for_google_status(response, f"drive file {file_id}")
        metadata = SourceMetadata.from_api(response.json())
        logger.debug("File metadata: %s", metadata)
        return metadata

    async def open_stream(self, file_id: str, total_size: int = 0) -> ResponseStream:
        """
        Start downloading ``file_id`` and return an iterator over its bytes.

        The response status is checked before returning, so missing files or
        permission problems surface here rather than inside the pipeline. The
        returned stream owns the response; closing it releases the connection
        even if it was never read.
        """
        logger.debug("Opening download stream for: %s", file_id)
        request = self.client.build_request(
            "GET",
            f"{DRIVE_API_URL}/files/{file_id}",
            params={"alt": "media", "supportsAllDrives": "true"},
            headers=await self._headers(),
        )
        response = await self.client.send(request, stream=True)
        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise_for_google_status(response, f"drive file {file_id}")

        return ResponseStream(response, self.chunk_size, total_size=total_size, desc=f"drive:{file_id}")
