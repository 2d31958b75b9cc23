"""Compute backend interface."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from batchscribe.jobs.models import JobSpec


class BackendState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (BackendState.SUCCEEDED, BackendState.FAILED)


class BackendJobStatus(BaseModel):
    state: BackendState
    detail: str = ""
    # Only meaningful for FAILED: whether a fresh attempt may succeed
    retryable: bool = False


class ComputeBackend(ABC):
    """Abstract interface for an elastic batch-compute system.

    submit() is not idempotent on the backend side. Callers that are unsure
    whether a submit went through must check find(name) before submitting
    the same name again.
    """

    kind = "abstract"

    @abstractmethod
    async def submit(self, spec: JobSpec, name: str) -> str:
        """Start one compute job for spec under `name`. Returns backend job id."""
        ...

    @abstractmethod
    async def poll(self, backend_job_id: str) -> BackendJobStatus:
        """Current status. May be stale; repeated identical answers are fine."""
        ...

    @abstractmethod
    async def cancel(self, backend_job_id: str) -> None:
        ...

    @abstractmethod
    async def find(self, name: str) -> Optional[str]:
        """Backend job id of a job previously submitted under `name`, if any."""
        ...
