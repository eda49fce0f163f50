"""
Audio transcoding core.

Moves bytes from a video source through an external transcoder into a
destination object, one bounded-memory job at a time:

- admission: Concurrency and memory gate with polling acquire and idempotent release
- errors: Admission and per-leg pipeline failures
- process: ffmpeg command line and the subprocess wrapper
- streams: Source and destination protocols the pipeline depends on
- pipeline: Ingest, transcode and upload legs with shared cancellation
"""
