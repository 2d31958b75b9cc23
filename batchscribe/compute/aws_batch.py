"""AWS Batch compute backend.

Submits one Batch job per attempt to the GPU job queue, passing the
transcription parameters to the whisper container as environment
variables.
"""

import asyncio
from functools import partial
from typing import Dict, List, Optional

from batchscribe import aws
from batchscribe.compute.base import BackendJobStatus, BackendState, ComputeBackend
from batchscribe.jobs.errors import BackendError, TransientBackendError
from batchscribe.jobs.models import JobSpec

_STATE_MAP = {
    "SUBMITTED": BackendState.QUEUED,
    "PENDING": BackendState.QUEUED,
    "RUNNABLE": BackendState.QUEUED,
    "STARTING": BackendState.QUEUED,
    "RUNNING": BackendState.RUNNING,
    "SUCCEEDED": BackendState.SUCCEEDED,
    "FAILED": BackendState.FAILED,
}

# Status reasons for instance loss (Spot reclaim, host failure); the
# container itself did nothing wrong, so a new attempt may succeed.
_RETRYABLE_REASON_PREFIXES = ("Host EC2", "Spot instance", "Essential container in task exited: Host")


def container_environment(spec: JobSpec) -> List[Dict[str, str]]:
    """Environment variables read by the whisper container entrypoint."""
    env = {
        "TRK_JOB_UID": spec.job_id,
        "TRK_INPUT_FILE": spec.input_file,
        "TRK_LANGUAGE": spec.language,
        "WHISPER_MODEL": spec.model.model_name,
    }
    return [{"name": k, "value": v} for k, v in sorted(env.items())]


def is_retryable_reason(reason: str) -> bool:
    return reason.startswith(_RETRYABLE_REASON_PREFIXES)


class AwsBatchBackend(ComputeBackend):
    kind = "aws_batch"

    def __init__(
        self,
        job_queue: str,
        job_definitions: Dict[str, str],
        region: Optional[str] = None,
        client=None,
    ):
        if not job_queue:
            raise BackendError("BATCH_JOB_QUEUE must be set for the aws_batch backend")
        self._job_queue = job_queue
        self._job_definitions = dict(job_definitions)
        self._client = client or aws.make_client("batch", region)

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except Exception as exc:
            if not aws.is_aws_error(exc):
                raise
            if aws.is_transient(exc):
                raise TransientBackendError(f"Batch {type(exc).__name__}: {exc}") from exc
            raise BackendError(f"Batch {type(exc).__name__}: {exc}") from exc

    def _definition_for(self, spec: JobSpec) -> str:
        definition = self._job_definitions.get(spec.model.value)
        if not definition:
            raise BackendError(f"No Batch job definition configured for model {spec.model.value}")
        return definition

    async def submit(self, spec: JobSpec, name: str) -> str:
        response = await self._run(
            self._client.submit_job,
            jobName=name,
            jobQueue=self._job_queue,
            jobDefinition=self._definition_for(spec),
            containerOverrides={"environment": container_environment(spec)},
        )
        return response["jobId"]

    async def poll(self, backend_job_id: str) -> BackendJobStatus:
        response = await self._run(self._client.describe_jobs, jobs=[backend_job_id])
        jobs = response.get("jobs", [])
        if not jobs:
            # Freshly submitted jobs can be briefly invisible to DescribeJobs
            raise TransientBackendError(f"Batch job {backend_job_id} not visible yet")

        job = jobs[0]
        state = _STATE_MAP.get(job["status"])
        if state is None:
            raise BackendError(f"Unknown Batch job status {job['status']!r}")
        reason = job.get("statusReason", "")
        return BackendJobStatus(
            state=state,
            detail=reason,
            retryable=state is BackendState.FAILED and is_retryable_reason(reason),
        )

    async def cancel(self, backend_job_id: str) -> None:
        # TerminateJob also cancels jobs that have not started yet
        await self._run(
            self._client.terminate_job,
            jobId=backend_job_id,
            reason="Cancelled by batchscribe",
        )

    async def find(self, name: str) -> Optional[str]:
        response = await self._run(
            self._client.list_jobs,
            jobQueue=self._job_queue,
            filters=[{"name": "JOB_NAME", "values": [name]}],
        )
        for summary in response.get("jobSummaryList", []):
            if summary.get("jobName") == name:
                return summary["jobId"]
        return None
