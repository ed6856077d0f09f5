"""Custom exception hierarchy for the cry analysis pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at job boundaries while preserving specific failure context. The
handler distinguishes permanent failures (PreconditionError,
AnalysisRejectedError) from transient ones, which consume a retry.
"""


class PipelineError(Exception):
    """Base exception for all analysis pipeline errors."""

    def __init__(self, message: str, recording_id: str | None = None) -> None:
        self.recording_id = recording_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.recording_id:
            return f"[recording={self.recording_id}] {super().__str__()}"
        return super().__str__()


class PreconditionError(PipelineError):
    """Raised when required data for an analysis is missing or invalid.

    Permanent: the analysis is failed without consuming a retry.
    """

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        field: str | None = None,
    ) -> None:
        self.field = field
        super().__init__(message, recording_id)


class ServiceUnavailableError(PipelineError):
    """Raised when the prediction service is refused or unhealthy."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        retry_in_seconds: float | None = None,
    ) -> None:
        self.retry_in_seconds = retry_in_seconds
        super().__init__(message, recording_id)


class PredictionError(PipelineError):
    """Raised when a prediction call fails at transport or HTTP level."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, recording_id)


class AudioFetchError(PipelineError):
    """Raised when reading audio from object storage fails transiently."""

    def __init__(
        self, message: str, recording_id: str | None = None, key: str | None = None
    ) -> None:
        self.key = key
        super().__init__(message, recording_id)


class StorageError(PipelineError):
    """Raised when entity store or object storage operations fail."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, recording_id)


class InvalidTransitionError(PipelineError):
    """Raised when an analysis status change is not permitted."""

    def __init__(
        self,
        current: str,
        target: str,
        recording_id: str | None = None,
    ) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid analysis transition: {current} -> {target}", recording_id
        )


class AnalysisRejectedError(PipelineError):
    """Raised when a manual analysis trigger is refused."""


class LeaseRetainedError(PipelineError):
    """Raised by a job handler that must not release its lease.

    The worker leaves the job leased so the lease expires and the same
    job is re-delivered, instead of marking it failed.
    """
