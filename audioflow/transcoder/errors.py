class AudioflowError(Exception):
    """Base exception for the transcode core."""


class AdmissionTimeout(AudioflowError):
    """No pipeline slot (or no safe memory level) became available before the deadline."""

    def __init__(self, elapsed: float, timeout: float, held: int = 0, max_concurrent: int = 0):
        self.elapsed = elapsed
        self.timeout = timeout
        self.held = held
        self.max_concurrent = max_concurrent
        super().__init__(
            f"Timed out after {elapsed:.1f}s (limit {timeout:.1f}s) waiting for free job slot and safe memory level"
        )


class PipelineError(AudioflowError):
    """A leg of a transcode pipeline failed."""

    leg = "pipeline"

    def __init__(self, job_id: str, message: str, cause: BaseException | None = None):
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"[{job_id}] {self.leg} failed: {message}")

    @classmethod
    def wrap(cls, job_id: str, cause: BaseException) -> "PipelineError":
        return cls(job_id, f"unexpected error: {cause!r}", cause)


class IngestError(PipelineError):
    leg = "ingest"


class TranscodeError(PipelineError):
    leg = "transcode"

    def __init__(self, job_id: str, returncode: int | None, diagnostics: str = ""):
        self.returncode = returncode
        self.diagnostics = diagnostics
        if returncode is None:
            message = diagnostics or "transcoder did not run"
        else:
            message = f"ffmpeg exited with code {returncode}"
            if diagnostics:
                message = f"{message}: {diagnostics}"
        super().__init__(job_id, message)

    @classmethod
    def wrap(cls, job_id: str, cause: BaseException) -> "TranscodeError":
        error = cls(job_id, None, f"unexpected error: {cause!r}")
        error.cause = cause
        return error


class EgressError(PipelineError):
    leg = "egress"
