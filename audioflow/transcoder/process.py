"""
ffmpeg subprocess wrapper.

The child process is driven purely through its standard streams: encoded
video goes in on stdin, MP3 comes out on stdout, and stderr is treated as a
diagnostic side channel that is drained (so ffmpeg never blocks on a full
pipe) and kept as a short tail for error reports.
"""

import logging
import subprocess
from collections.abc import Sequence

import anyio
from anyio.abc import Process

from audioflow.configs import Settings, settings

logger = logging.getLogger(__name__)

_DIAGNOSTIC_TAIL_BYTES = 4096


def build_ffmpeg_command(config: Settings = settings) -> list[str]:
    """
    Build the argv for the single supported profile.

    Video is dropped, audio is downmixed to ``config.audio_channels`` at
    ``config.audio_sample_rate`` and encoded to constant-bitrate MP3.
    """
    return [
        config.ffmpeg_path,
        "-loglevel",
        config.ffmpeg_loglevel,
        "-nostats",
        "-hide_banner",
        "-i",
        "pipe:0",
        "-vn",
        "-ac",
        str(config.audio_channels),
        "-ar",
        str(config.audio_sample_rate),
        "-b:a",
        config.audio_bitrate,
        "-acodec",
        "libmp3lame",
        "-compression_level",
        "9",
        "-threads",
        "1",
        "-f",
        "mp3",
        "pipe:1",
    ]


class TranscoderProcess:
    """One live transcoder child process bound to a single pipeline invocation."""

    def __init__(self, process: Process, job_id: str):
        self._process = process
        self.job_id = job_id
        self._diagnostics = bytearray()

    @classmethod
    async def spawn(cls, command: Sequence[str], job_id: str) -> "TranscoderProcess":
        logger.debug("[%s] Spawning transcoder: %s", job_id, " ".join(command))
        process = await anyio.open_process(
            list(command),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        return cls(process, job_id)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def diagnostics(self) -> str:
        return self._diagnostics.decode("utf-8", errors="replace").strip()

    async def send(self, chunk: bytes) -> None:
        await self._process.stdin.send(chunk)

    async def close_input(self) -> None:
        await self._process.stdin.aclose()

    async def receive(self, max_bytes: int) -> bytes:
        """Read the next chunk of output. Raises ``anyio.EndOfStream`` once stdout is exhausted."""
        return await self._process.stdout.receive(max_bytes)

    async def _drain_diagnostics(self) -> None:
        stderr = self._process.stderr
        try:
            async for chunk in stderr:
                logger.debug("[%s] ffmpeg stderr: %s", self.job_id, chunk.decode("utf-8", errors="replace").rstrip())
                self._diagnostics.extend(chunk)
                if len(self._diagnostics) > _DIAGNOSTIC_TAIL_BYTES:
                    del self._diagnostics[: len(self._diagnostics) - _DIAGNOSTIC_TAIL_BYTES]
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    async def wait(self) -> int:
        """Wait for the process to exit while draining its diagnostic stream."""
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._drain_diagnostics)
            returncode = await self._process.wait()
        logger.debug("[%s] ffmpeg exited with code: %s", self.job_id, returncode)
        return returncode

    def kill(self) -> None:
        if self._process.returncode is None:
            logger.debug("[%s] Killing transcoder pid %s", self.job_id, self._process.pid)
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def aclose(self) -> None:
        """Kill the process if it is still running, reap it and close its pipes."""
        self.kill()
        await self._process.aclose()
