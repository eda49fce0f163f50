import json
import re

import httpx
import pytest

from audioflow.utils.gcs import GCSObjectSink, GCSResumableWriter, StorageError, normalize_chunk_size
from audioflow.utils.google_clients import AuthorizationError, QuotaExceeded

SESSION_URL = "https://storage.googleapis.com/upload/storage/v1/b/media/o?uploadType=resumable&upload_id=xyz"
KIB = 1024


class FakeCredentials:
    def __init__(self):
        self.calls = []

    async def get_access_token(self, scopes, subject=None):
        self.calls.append((tuple(scopes), subject))
        return "token-123"


class FakeResumableService:
    """Minimal stand-in for the Cloud Storage resumable upload endpoint."""

    def __init__(self, persist_limit: int | None = None):
        self.persist_limit = persist_limit
        self.received = bytearray()
        self.requests: list[httpx.Request] = []
        self.content_ranges: list[str] = []
        self.session_body = None
        self.deleted = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            self.session_body = json.loads(request.content)
            return httpx.Response(200, headers={"Location": SESSION_URL})
        if request.method == "DELETE":
            self.deleted = True
            return httpx.Response(499)

        content_range = request.headers["Content-Range"]
        self.content_ranges.append(content_range)
        match = re.fullmatch(r"bytes (?:(\d+)-(\d+)|\*)/(\d+|\*)", content_range)
        start, _, total = match.groups()
        body = request.content
        if start is not None:
            assert int(start) == len(self.received)
            if self.persist_limit is not None:
                body = body[: self.persist_limit]
                self.persist_limit = None
            self.received.extend(body)

        if total == "*":
            return httpx.Response(308, headers={"Range": f"bytes=0-{len(self.received) - 1}"})
        return httpx.Response(
            200,
            json={"bucket": "media", "name": "clip.mp3", "size": str(len(self.received)), "contentType": "audio/mpeg"},
        )


def _writer(service, chunk_size: int = 256 * KIB) -> GCSResumableWriter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(service))
    return GCSResumableWriter(
        client,
        FakeCredentials(),
        "media",
        "audio/clip.mp3",
        "audio/mpeg",
        {"sourceFileId": "file-1"},
        chunk_size,
    )


def test_normalize_chunk_size():
    assert normalize_chunk_size(1) == 256 * KIB
    assert normalize_chunk_size(600 * KIB) == 512 * KIB
    assert normalize_chunk_size(1024 * KIB) == 1024 * KIB


@pytest.mark.asyncio
async def test_resumable_upload_sends_aligned_chunks():
    service = FakeResumableService()
    writer = await _writer(service).start()
    payload = bytes(range(256)) * (600 * KIB // 256)

    for offset in range(0, len(payload), 100 * KIB):
        await writer.write(payload[offset : offset + 100 * KIB])
    result = await writer.finalize()

    assert bytes(service.received) == payload
    assert service.content_ranges == [
        "bytes 0-262143/*",
        "bytes 262144-524287/*",
        "bytes 524288-614399/614400",
    ]
    assert result["size"] == "614400"
    assert service.session_body == {
        "name": "audio/clip.mp3",
        "contentType": "audio/mpeg",
        "metadata": {"sourceFileId": "file-1"},
    }
    session_request = service.requests[0]
    assert session_request.url.params["uploadType"] == "resumable"
    assert session_request.headers["X-Upload-Content-Type"] == "audio/mpeg"
    assert session_request.headers["Authorization"] == "Bearer token-123"


@pytest.mark.asyncio
async def test_resumable_upload_resends_unpersisted_bytes():
    service = FakeResumableService(persist_limit=128 * KIB)
    writer = await _writer(service).start()
    payload = b"a" * (300 * KIB)

    await writer.write(payload)
    await writer.finalize()

    assert bytes(service.received) == payload
    assert service.content_ranges[0] == "bytes 0-262143/*"
    assert service.content_ranges[1].startswith("bytes 131072-")


@pytest.mark.asyncio
async def test_empty_upload_finalizes_with_zero_length():
    service = FakeResumableService()
    writer = await _writer(service).start()

    result = await writer.finalize()

    assert service.content_ranges == ["bytes */0"]
    assert result["size"] == "0"


@pytest.mark.asyncio
async def test_abort_cancels_session_once():
    service = FakeResumableService()
    writer = await _writer(service).start()
    await writer.write(b"partial")

    await writer.abort()
    await writer.abort()

    assert service.deleted
    assert [request.method for request in service.requests] == ["POST", "DELETE"]
    with pytest.raises(StorageError):
        await writer.write(b"more")


@pytest.mark.asyncio
async def test_session_creation_maps_errors():
    def forbidden(request):
        return httpx.Response(403, json={"error": {"message": "Forbidden", "errors": [{"reason": "forbidden"}]}})

    def over_quota(request):
        return httpx.Response(
            403, json={"error": {"message": "Quota exceeded", "errors": [{"reason": "quotaExceeded"}]}}
        )

    with pytest.raises(AuthorizationError):
        await _writer(forbidden).start()
    with pytest.raises(QuotaExceeded):
        await _writer(over_quota).start()


@pytest.mark.asyncio
async def test_session_without_location_is_a_storage_error():
    with pytest.raises(StorageError):
        await _writer(lambda request: httpx.Response(200)).start()


@pytest.mark.asyncio
async def test_object_sink_metadata_and_existence():
    objects = {"audio/clip.mp3": {"name": "audio/clip.mp3", "size": "10", "contentType": "audio/mpeg"}}

    def handler(request: httpx.Request):
        name = request.url.path.split("/o/", 1)[1]
        if name in objects:
            return httpx.Response(200, json=objects[name])
        return httpx.Response(404, json={"error": {"message": "No such object"}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    existing = GCSObjectSink(client, FakeCredentials(), "media", "audio/clip.mp3")
    missing = GCSObjectSink(client, FakeCredentials(), "media", "audio/other.mp3")

    assert existing.name == "gs://media/audio/clip.mp3"
    assert (await existing.get_metadata())["size"] == "10"
    assert await existing.exists()
    assert await missing.get_metadata() is None
    assert not await missing.exists()


@pytest.mark.asyncio
async def test_object_sink_opens_started_writer():
    service = FakeResumableService()
    client = httpx.AsyncClient(transport=httpx.MockTransport(service))
    sink = GCSObjectSink(client, FakeCredentials(), "media", "clip.mp3", chunk_size=300 * KIB)

    writer = await sink.open_writer("audio/mpeg", {"actingUser": "user@example.com"})

    assert writer.session_url == SESSION_URL
    assert writer.chunk_size == 256 * KIB
    assert service.session_body["metadata"] == {"actingUser": "user@example.com"}
