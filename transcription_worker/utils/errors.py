"""Custom exception hierarchy for the transcription worker.

All exceptions inherit from PipelineError, enabling targeted handling
at pipeline boundaries while preserving specific failure context. Each
error carries a FailureKind so retry decisions never depend on message
text.
"""

from enum import Enum


class FailureKind(str, Enum):
    """How a failure should be treated by the retry policy."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    FATAL = "fatal"


class PipelineError(Exception):
    """Base exception for all transcription worker errors."""

    kind: FailureKind = FailureKind.FATAL

    def __init__(self, message: str, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.job_id:
            return f"[job={self.job_id}] {super().__str__()}"
        return super().__str__()


class ConfigurationError(PipelineError):
    """Raised when required configuration is missing at startup."""

    def __init__(self, message: str, setting: str | None = None) -> None:
        self.setting = setting
        super().__init__(message)


class JobValidationError(PipelineError):
    """Raised when a claimed job is missing required fields."""

    def __init__(
        self, message: str, job_id: str | None = None, field: str | None = None
    ) -> None:
        self.field = field
        super().__init__(message, job_id)


class AudioFetchError(PipelineError):
    """Raised when fetching audio from blob storage fails."""

    def __init__(
        self, message: str, job_id: str | None = None, key: str | None = None
    ) -> None:
        self.key = key
        super().__init__(message, job_id)


class TranscodeError(PipelineError):
    """Raised when ffmpeg transcoding fails."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        exit_status: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(message, job_id)


class TranscriptionError(PipelineError):
    """Raised when the speech-to-text service call fails.

    The transcription client sets ``kind`` to RATE_LIMIT or TIMEOUT for
    transient service conditions; anything else stays FATAL.
    """

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        provider: str | None = None,
        kind: FailureKind = FailureKind.FATAL,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.kind = kind
        self.status_code = status_code
        super().__init__(message, job_id)


class StorageError(PipelineError):
    """Raised when persistence operations (PostgREST) fail."""

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, job_id)


class QueueError(PipelineError):
    """Raised when a message broker call fails."""

    def __init__(
        self,
        message: str,
        queue_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.queue_id = queue_id
        self.operation = operation
        super().__init__(message)
