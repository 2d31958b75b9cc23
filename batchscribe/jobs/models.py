"""Job data models: requests, immutable specs, and tracked records."""

import base64
import posixpath
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Generate a 22-char URL-safe id that starts with an alphanumeric char."""
    while True:
        uid = base64.urlsafe_b64encode(uuid.uuid4().bytes).decode().rstrip("=")
        if uid[0].isascii() and uid[0].isalnum():
            return uid


class WhisperModel(str, Enum):
    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def model_name(self) -> str:
        """Model name understood by the transcription container."""
        if self is WhisperModel.LARGE:
            return "large-v3"
        return self.value


class JobState(str, Enum):
    PENDING = "pending"
    STAGING = "staging"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class JobRequest(BaseModel):
    """Raw transcription request as received from a caller."""
    job_id: Optional[str] = None
    input_key: str
    model: str = WhisperModel.LARGE.value
    language: str = "auto"


class JobSpec(BaseModel):
    """One validated transcription request. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    input_key: str
    model: WhisperModel
    language: str

    @property
    def input_file(self) -> str:
        return posixpath.basename(self.input_key)

    @property
    def staged_input_key(self) -> str:
        return f"{self.job_id}/in/{self.input_file}"

    @property
    def staged_input_prefix(self) -> str:
        return f"{self.job_id}/in/"

    @property
    def output_prefix(self) -> str:
        return f"{self.job_id}/out/"

    @property
    def manifest_key(self) -> str:
        return f"{self.job_id}/job.json"

    def marker_key(self, marker_name: str) -> str:
        return f"{self.job_id}/{marker_name}"

    def submission_name(self, attempt: int) -> str:
        """Backend job name for one attempt; unique per (job, attempt)."""
        return f"{self.job_id}-{attempt}"


class ErrorInfo(BaseModel):
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(kind=type(exc).__name__, message=str(exc))


class StateChange(BaseModel):
    state: JobState
    at: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Tracks the lifecycle of one transcription job."""
    spec: JobSpec
    state: JobState = JobState.PENDING
    attempt_count: int = 0
    backend_job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[ErrorInfo] = None
    history: List[StateChange] = Field(default_factory=list)

    @property
    def job_id(self) -> str:
        return self.spec.job_id
