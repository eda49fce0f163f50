"""
Source and destination protocols for the transcode pipeline.

Decouples the pipeline from any specific transport (Google Drive, GCS,
in-memory fakes). A source is any single-pass async iterator of bytes; a
destination is a sink that can report whether its object exists and can open
a writer that either commits the object on ``finalize()`` or discards it on
``abort()``.
"""

from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ObjectWriter(Protocol):
    """
    Writable byte stream for one destination object.

    ``write`` must apply backpressure (return only once the chunk has been
    accepted into a bounded buffer). Exactly one of ``finalize`` or ``abort``
    ends the writer; nothing is committed unless ``finalize`` succeeds.
    """

    async def write(self, chunk: bytes) -> None: ...

    async def finalize(self) -> dict[str, Any]:
        """Commit the object and return its persisted metadata."""
        ...

    async def abort(self) -> None:
        """Discard everything written so far."""
        ...


@runtime_checkable
class DestinationSink(Protocol):
    @property
    def name(self) -> str:
        """Identifier of the destination object, for logs."""
        ...

    async def exists(self) -> bool: ...

    async def get_metadata(self) -> dict[str, Any] | None:
        """Metadata of the existing object, or None when it does not exist."""
        ...

    async def open_writer(self, content_type: str, metadata: Mapping[str, str]) -> ObjectWriter: ...


async def close_source(source: AsyncIterator[bytes]) -> None:
    """Close a source iterator if it supports it (async generators, response streams)."""
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()
