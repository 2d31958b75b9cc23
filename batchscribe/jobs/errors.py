"""
Job-specific error types.

All errors inherit from JobError for easy catching. Transient errors are
the only ones the tracker retries; everything else ends the job or is
returned to the caller.
"""


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class ValidationError(JobError):
    """Raised when a job request is rejected before entering the tracker."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class DuplicateJobError(JobError):
    """Raised when a job id is already tracked and not yet finished."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job already in progress: {job_id}")


class NotFoundError(JobError):
    """Raised when a job is unknown or has been evicted."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobActiveError(JobError):
    """Raised when an operation needs a finished job but it is still running."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job is still active: {job_id}")


class JobNotFinishedError(JobError):
    """Raised when outputs are requested before the completion marker exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not finished yet: {job_id}")


class InvalidStateTransitionError(JobError):
    """Raised when attempting an illegal state transition."""

    def __init__(self, current_state: str, target_state: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid job state transition: {current_state} -> {target_state}"
        )


class EmptyOutputError(JobError):
    """The compute job finished but left nothing under the output prefix."""
    pass


class JobTimeoutError(JobError):
    """The per-job deadline fired before the job reached a terminal state."""
    pass


class InputNotFoundError(JobError):
    """The input artifact does not exist in the store."""
    pass


class BackendJobError(JobError):
    """The compute backend reported the job as failed."""
    pass


class StorageError(JobError):
    """Non-retryable artifact store failure."""
    pass


class TransientStorageError(StorageError):
    """Artifact store failure that may succeed on retry."""
    pass


class ArtifactNotFoundError(StorageError):
    """Raised when reading an object that does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Artifact not found: {key}")


class BackendError(JobError):
    """Non-retryable compute backend failure."""
    pass


class TransientBackendError(BackendError):
    """Compute backend failure that may succeed on retry."""
    pass
