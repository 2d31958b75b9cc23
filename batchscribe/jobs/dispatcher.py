"""Dispatcher: validates transcription requests and fronts the job tracker."""

import logging
import posixpath
import re
import uuid
from typing import List, Optional

from batchscribe.jobs.errors import (
    ArtifactNotFoundError,
    JobActiveError,
    JobNotFinishedError,
    NotFoundError,
    ValidationError,
)
from batchscribe.jobs.models import JobRecord, JobRequest, JobSpec, JobState, WhisperModel, new_job_id
from batchscribe.jobs.state import is_job_terminal
from batchscribe.jobs.tracker import JobTracker

logger = logging.getLogger(__name__)

# Usable both as a storage prefix and as a Batch job name
_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$")
_LANGUAGE_RE = re.compile(r"^[a-z]{2,3}$")
_UPLOAD_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")

UPLOAD_PREFIX = "uploads/"


def validate_request(request: JobRequest) -> JobSpec:
    """Turn a raw request into a JobSpec or raise ValidationError."""
    job_id = request.job_id if request.job_id is not None else new_job_id()
    if not _JOB_ID_RE.match(job_id):
        raise ValidationError("job_id", "must be 1-100 letters, digits, '-' or '_'")

    input_key = request.input_key.strip()
    if not input_key:
        raise ValidationError("input_key", "must not be empty")
    if input_key.endswith("/"):
        raise ValidationError("input_key", "must name a file, not a prefix")

    try:
        model = WhisperModel(request.model)
    except ValueError:
        choices = ", ".join(m.value for m in WhisperModel)
        raise ValidationError("model", f"{request.model!r} is not one of: {choices}")

    language = request.language.strip().lower()
    if language != "auto" and not _LANGUAGE_RE.match(language):
        raise ValidationError("language", "must be an ISO 639 code or 'auto'")

    return JobSpec(job_id=job_id, input_key=input_key, model=model, language=language)


class Dispatcher:
    """Entry point for callers; everything goes through the tracker or the store."""

    def __init__(self, tracker: JobTracker, completion_marker: str = "done"):
        self._tracker = tracker
        self._store = tracker.store
        self._completion_marker = completion_marker

    @property
    def tracker(self) -> JobTracker:
        return self._tracker

    async def submit(self, request: JobRequest) -> str:
        spec = validate_request(request)
        return await self._tracker.submit(spec)

    async def get_status(self, job_id: str) -> JobRecord:
        return await self._tracker.status(job_id)

    async def cancel(self, job_id: str) -> JobRecord:
        return await self._tracker.cancel(job_id)

    async def list_jobs(self, state: Optional[JobState] = None) -> List[JobRecord]:
        return await self._tracker.list_jobs(state)

    async def list_outputs(self, job_id: str) -> List[str]:
        """Names of the transcript files of a completed job.

        Works from storage alone, so it also serves jobs that have been
        evicted from the tracker.
        """
        keys = await self._store.list_keys(f"{job_id}/")
        if not keys:
            raise NotFoundError(job_id)
        if f"{job_id}/{self._completion_marker}" not in keys:
            raise JobNotFinishedError(job_id)
        out_prefix = f"{job_id}/out/"
        return [k[len(out_prefix):] for k in keys if k.startswith(out_prefix)]

    async def read_output(self, job_id: str, name: str) -> bytes:
        if name not in await self.list_outputs(job_id):
            raise ArtifactNotFoundError(f"{job_id}/out/{name}")
        return await self._store.get(f"{job_id}/out/{name}")

    async def purge(self, job_id: str) -> int:
        """Delete every artifact of a finished job and stop tracking it."""
        try:
            record = await self._tracker.status(job_id)
        except NotFoundError:
            record = None
        if record is not None and not is_job_terminal(record.state):
            raise JobActiveError(job_id)

        removed = await self._store.delete_prefix(f"{job_id}/")
        forgotten = self._tracker.forget(job_id)
        if not removed and not forgotten:
            raise NotFoundError(job_id)
        logger.info("Purged job %s (%d artifact(s))", job_id, removed)
        return removed

    async def upload_input(self, filename: str, data: bytes) -> str:
        """Store uploaded audio and return the input_key to submit with."""
        safe_name = _UPLOAD_NAME_RE.sub("_", posixpath.basename(filename or "")).lstrip(".")
        if not safe_name:
            raise ValidationError("filename", "must not be empty")
        if not data:
            raise ValidationError("file", "must not be empty")
        key = f"{UPLOAD_PREFIX}{uuid.uuid4().hex}/{safe_name}"
        await self._store.put(key, data)
        return key

    async def start(self) -> None:
        await self._tracker.start()

    async def stop(self) -> None:
        await self._tracker.stop()
