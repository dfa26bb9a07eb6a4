"""
Standardised error handling for sttqueue.

Pipeline stage errors are terminal for the current attempt: the worker
records the message on the job and never retries automatically.
"""

from sttqueue.core.constants import ErrorCode


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class DownloadError(JobError):
    """Network error, non-2xx response, oversize payload or timeout."""

    def __init__(self, message: str, code: str = ErrorCode.DOWNLOAD_FAILED):
        super().__init__(code, message)


class ConversionError(JobError):
    """Nonzero exit or timeout from the audio converter."""

    def __init__(self, message: str, code: str = ErrorCode.FFMPEG_CONVERT):
        super().__init__(code, message)


class TranscriptionError(JobError):
    """Nonzero exit or timeout from the recognition engine."""

    def __init__(self, message: str, code: str = ErrorCode.TRANSCRIBE_FAILED):
        super().__init__(code, message)


class PersistenceError(JobError):
    """The job store is unreachable or rejected an update."""

    def __init__(self, message: str, code: str = ErrorCode.PERSISTENCE):
        super().__init__(code, message)


class SubmissionError(JobError):
    """A job submission was rejected before anything was stored."""


class RetryRejectedError(JobError):
    """A retry request was refused; the job was not modified."""


def is_timeout(error: JobError) -> bool:
    return error.code in (
        ErrorCode.DOWNLOAD_TIMEOUT,
        ErrorCode.FFMPEG_TIMEOUT,
        ErrorCode.TRANSCRIBE_TIMEOUT,
    )
