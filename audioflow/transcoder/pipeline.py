"""
Streaming transcode pipeline.

Bytes flow through three legs that run concurrently inside one task group:

1. **ingest**: source iterator -> transcoder stdin, then stdin is closed so
   the transcoder sees end-of-input.
2. **transcode**: the transcoder process itself, observed through its exit
   status (stderr is drained as diagnostics).
3. **egress**: transcoder stdout -> bounded in-memory buffer -> destination
   writer, finalised only once ingest completed and the transcoder exited
   cleanly.

Every hop awaits its consumer, so a slow destination stalls ffmpeg's output,
which stalls ffmpeg's input, which stalls the source read. The first leg to
fail records its error and cancels the shared cancel scope; teardown then
kills the transcoder, aborts the writer and closes the source before ``run``
raises that first error.
"""

import itertools
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import anyio
from anyio import CancelScope
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from audioflow.configs import Policy
from audioflow.const import AUDIO_CONTENT_TYPE
from audioflow.transcoder.errors import EgressError, IngestError, PipelineError, TranscodeError
from audioflow.transcoder.process import TranscoderProcess, build_ffmpeg_command
from audioflow.transcoder.streams import DestinationSink, ObjectWriter, close_source

logger = logging.getLogger(__name__)

# Upper bound on how long teardown may take once a pipeline has finished or failed.
_TEARDOWN_TIMEOUT = 10.0

_job_ids = itertools.count(1)

# Raised on writes to the stdin of a transcoder that has already exited.
_BROKEN_INPUT = (anyio.BrokenResourceError, anyio.ClosedResourceError, BrokenPipeError, ConnectionResetError)


@dataclass
class PipelineRequest:
    source: AsyncIterator[bytes]
    sink: DestinationSink
    metadata: Mapping[str, str] = field(default_factory=dict)
    content_type: str = AUDIO_CONTENT_TYPE
    job_id: str = field(default_factory=lambda: f"job-{next(_job_ids)}")


@dataclass
class _Invocation:
    """Mutable state shared by the legs of one ``run`` call."""

    request: PipelineRequest
    process: TranscoderProcess
    writer: ObjectWriter
    cancel_scope: CancelScope | None = None
    error: PipelineError | None = None
    ingest_done: anyio.Event = field(default_factory=anyio.Event)
    transcode_ok: anyio.Event = field(default_factory=anyio.Event)
    finalized: bool = False
    result: dict[str, Any] | None = None
    bytes_in: int = 0
    bytes_out: int = 0

    @property
    def job_id(self) -> str:
        return self.request.job_id


class TranscodePipeline:
    """
    Pipes a source byte stream through ffmpeg into a destination writer.

    Stateless between invocations; a single instance may serve many
    concurrent ``run`` calls.
    """

    def __init__(self, policy: Policy, command_factory: Callable[[], Sequence[str]] = build_ffmpeg_command):
        self.policy = policy
        self._command_factory = command_factory

    async def run(self, request: PipelineRequest) -> dict[str, Any]:
        """
        Transcode ``request.source`` into ``request.sink``.

        Returns:
            The persisted metadata reported by the destination after finalisation.

        Raises:
            IngestError: Reading the source failed.
            TranscodeError: The transcoder could not start or exited abnormally.
            EgressError: Opening, writing or finalising the destination failed.
        """
        job_id = request.job_id
        started = time.monotonic()
        logger.info("[%s] Pipeline start -> %s", job_id, request.sink.name)

        writer = None
        process = None
        invocation = None
        try:
            try:
                writer = await request.sink.open_writer(request.content_type, request.metadata)
            except Exception as exc:
                raise EgressError(job_id, f"could not open destination {request.sink.name}: {exc}", exc) from exc

            try:
                process = await TranscoderProcess.spawn(self._command_factory(), job_id)
            except OSError as exc:
                raise TranscodeError(job_id, None, f"could not start transcoder: {exc}") from exc

            invocation = _Invocation(request=request, process=process, writer=writer)
            await self._run_legs(invocation)
        finally:
            with anyio.move_on_after(_TEARDOWN_TIMEOUT, shield=True):
                await self._teardown(request, process, writer, invocation)

        if invocation.error is not None:
            logger.error("[%s] Pipeline failed after %.1fs: %s", job_id, time.monotonic() - started, invocation.error)
            raise invocation.error

        logger.info(
            "[%s] Pipeline complete in %.1fs: %d bytes in, %d bytes out",
            job_id,
            time.monotonic() - started,
            invocation.bytes_in,
            invocation.bytes_out,
        )
        return invocation.result

    async def _run_legs(self, invocation: _Invocation) -> None:
        send_stream, receive_stream = anyio.create_memory_object_stream[bytes](self.policy.egress_buffer_chunks)
        async with anyio.create_task_group() as tg:
            invocation.cancel_scope = tg.cancel_scope
            tg.start_soon(self._guard, invocation, IngestError, self._ingest, invocation)
            tg.start_soon(self._guard, invocation, TranscodeError, self._transcode, invocation)
            tg.start_soon(self._guard, invocation, EgressError, self._pump_output, invocation, send_stream)
            tg.start_soon(self._guard, invocation, EgressError, self._upload, invocation, receive_stream)

    @staticmethod
    async def _guard(invocation: _Invocation, error_cls: type[PipelineError], leg, *args) -> None:
        """Run a leg; the first failure is kept and cancels every other leg."""
        try:
            await leg(*args)
        except Exception as exc:
            if not isinstance(exc, PipelineError):
                exc = error_cls.wrap(invocation.job_id, exc)
            if invocation.error is None:
                invocation.error = exc
                logger.warning("[%s] %s; cancelling remaining legs", invocation.job_id, exc)
            else:
                logger.debug("[%s] Suppressed secondary failure: %s", invocation.job_id, exc)
            invocation.cancel_scope.cancel()

    async def _ingest(self, invocation: _Invocation) -> None:
        process = invocation.process
        source = invocation.request.source
        while True:
            try:
                chunk = await source.__anext__()
            except StopAsyncIteration:
                break
            except Exception as exc:
                raise IngestError(invocation.job_id, f"source read failed: {exc}", exc) from exc

            if not chunk:
                continue
            try:
                await process.send(chunk)
            except _BROKEN_INPUT:
                # The transcoder stopped reading; its exit status decides the outcome.
                logger.debug("[%s] Transcoder closed its input after %d bytes", invocation.job_id, invocation.bytes_in)
                break
            invocation.bytes_in += len(chunk)

        try:
            await process.close_input()
        except _BROKEN_INPUT:
            pass
        logger.debug("[%s] Ingest complete: %d bytes", invocation.job_id, invocation.bytes_in)
        invocation.ingest_done.set()

    async def _transcode(self, invocation: _Invocation) -> None:
        returncode = await invocation.process.wait()
        if returncode != 0:
            raise TranscodeError(invocation.job_id, returncode, invocation.process.diagnostics)
        invocation.transcode_ok.set()

    async def _pump_output(self, invocation: _Invocation, send_stream: MemoryObjectSendStream[bytes]) -> None:
        async with send_stream:
            while True:
                try:
                    chunk = await invocation.process.receive(self.policy.read_chunk_size)
                except anyio.EndOfStream:
                    break
                except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
                    raise EgressError(invocation.job_id, f"transcoder output closed unexpectedly: {exc}", exc) from exc
                await send_stream.send(chunk)

    async def _upload(self, invocation: _Invocation, receive_stream: MemoryObjectReceiveStream[bytes]) -> None:
        writer = invocation.writer
        async with receive_stream:
            async for chunk in receive_stream:
                try:
                    await writer.write(chunk)
                except Exception as exc:
                    raise EgressError(invocation.job_id, f"destination write failed: {exc}", exc) from exc
                invocation.bytes_out += len(chunk)

        # Commit only once every leg agrees the stream is complete.
        await invocation.ingest_done.wait()
        await invocation.transcode_ok.wait()
        try:
            invocation.result = await writer.finalize()
        except Exception as exc:
            raise EgressError(invocation.job_id, f"destination finalize failed: {exc}", exc) from exc
        invocation.finalized = True

    @staticmethod
    async def _teardown(
        request: PipelineRequest,
        process: TranscoderProcess | None,
        writer: ObjectWriter | None,
        invocation: _Invocation | None,
    ) -> None:
        job_id = request.job_id
        if process is not None:
            try:
                await process.aclose()
            except Exception:
                logger.exception("[%s] Failed to reap transcoder", job_id)

        if writer is not None and not (invocation is not None and invocation.finalized):
            try:
                await writer.abort()
                logger.info("[%s] Destination write aborted", job_id)
            except Exception:
                logger.exception("[%s] Failed to abort destination write", job_id)

        try:
            await close_source(request.source)
        except Exception:
            logger.exception("[%s] Failed to close source stream", job_id)
