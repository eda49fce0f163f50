"""
Drive video -> GCS audio conversion service.

Glues the collaborators around the transcode core: resolves the Drive file,
derives the destination object, reuses an existing object instead of
converting again, and otherwise runs one pipeline inside an admission slot.
"""

import logging
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any, Optional, Protocol

import httpx

from audioflow.configs import Policy, Settings, settings
from audioflow.const import AUDIO_CONTENT_TYPE
from audioflow.transcoder.admission import AdmissionController
from audioflow.transcoder.pipeline import PipelineRequest, TranscodePipeline
from audioflow.transcoder.process import build_ffmpeg_command
from audioflow.transcoder.streams import DestinationSink
from audioflow.utils.drive import DriveSource, SourceMetadata
from audioflow.utils.gcs import GCSObjectSink
from audioflow.utils.google_clients import ServiceAccountCredentials
from audioflow.utils.http_utils import create_httpx_client, format_bytes
from audioflow.utils.storage_helpers import build_gcs_audio_response, build_object_name

logger = logging.getLogger(__name__)


class VideoSource(Protocol):
    async def get_metadata(self, file_id: str) -> SourceMetadata: ...

    async def open_stream(self, file_id: str, total_size: int = 0) -> AsyncIterator[bytes]: ...


SourceFactory = Callable[[str], VideoSource]
SinkFactory = Callable[[str, str], DestinationSink]


class ConversionService:
    def __init__(
        self,
        admission: AdmissionController,
        pipeline: TranscodePipeline,
        source_factory: SourceFactory,
        sink_factory: SinkFactory,
        default_bucket: Optional[str] = None,
        object_prefix: str = "",
    ):
        self.admission = admission
        self.pipeline = pipeline
        self.source_factory = source_factory
        self.sink_factory = sink_factory
        self.default_bucket = default_bucket
        self.object_prefix = object_prefix

    async def convert(self, file_id: str, user_email: str, bucket: Optional[str] = None) -> dict[str, Any]:
        """
        Convert a Drive video to MP3 in Cloud Storage, or return the existing conversion.

        Returns:
            dict: ``status`` ("ok" or "reused"), ``actingUser``, ``originalFile`` and ``audioFile``.
        """
        bucket = bucket or self.default_bucket
        if not bucket:
            raise ValueError("No destination bucket configured (set GCS_BUCKET or pass bucket)")

        source = self.source_factory(user_email)
        source_metadata = await source.get_metadata(file_id)
        object_name = build_object_name(source_metadata.name, self.object_prefix)
        sink = self.sink_factory(bucket, object_name)

        original_file = {
            "id": source_metadata.id,
            "name": source_metadata.name,
            "parents": source_metadata.parents,
            "mimeType": source_metadata.mime_type,
        }

        existing = await sink.get_metadata()
        if existing is not None:
            logger.info(f"Reusing existing audio {sink.name} for drive file {file_id}")
            return {
                "status": "reused",
                "actingUser": user_email,
                "originalFile": original_file,
                "audioFile": build_gcs_audio_response(bucket, object_name, existing),
            }

        async with self.admission.slot():
            stream = await source.open_stream(file_id, source_metadata.size)
            request = PipelineRequest(
                source=stream,
                sink=sink,
                metadata={
                    "sourceFileId": source_metadata.id,
                    "sourceFileName": source_metadata.name,
                    "sourceParents": ",".join(source_metadata.parents),
                    "actingUser": user_email,
                },
                content_type=AUDIO_CONTENT_TYPE,
                job_id=f"drive-{file_id}",
            )
            result = await self.pipeline.run(request)

        logger.info(f"Converted drive file {file_id} to {sink.name} ({format_bytes(int(result.get('size') or 0))})")
        return {
            "status": "ok",
            "actingUser": user_email,
            "originalFile": original_file,
            "audioFile": build_gcs_audio_response(bucket, object_name, result),
        }


class GoogleServiceFactory:
    """Builds Drive sources and GCS sinks sharing one HTTP client and one set of credentials."""

    def __init__(self, client: httpx.AsyncClient, policy: Policy, config: Settings = settings):
        self.client = client
        self.policy = policy
        self.config = config
        self._credentials: Optional[ServiceAccountCredentials] = None

    @property
    def credentials(self) -> ServiceAccountCredentials:
        # Loaded lazily so a missing key fails requests, not startup.
        if self._credentials is None:
            self._credentials = ServiceAccountCredentials.from_settings(self.config, client=self.client)
        return self._credentials

    def drive_source(self, user_email: str) -> DriveSource:
        return DriveSource(self.client, self.credentials, user_email, chunk_size=self.policy.read_chunk_size)

    def gcs_sink(self, bucket: str, object_name: str) -> GCSObjectSink:
        return GCSObjectSink(self.client, self.credentials, bucket, object_name, chunk_size=self.policy.upload_chunk_size)


def create_conversion_service(config: Settings = settings) -> tuple[ConversionService, httpx.AsyncClient]:
    """Wire the production service; the caller owns (and must close) the returned client."""
    policy = Policy.from_settings(config)
    client = create_httpx_client()
    factory = GoogleServiceFactory(client, policy, config)
    service = ConversionService(
        admission=AdmissionController(policy),
        pipeline=TranscodePipeline(policy, command_factory=partial(build_ffmpeg_command, config)),
        source_factory=factory.drive_source,
        sink_factory=factory.gcs_sink,
        default_bucket=config.gcs_bucket,
        object_prefix=config.gcs_object_prefix,
    )
    return service, client
