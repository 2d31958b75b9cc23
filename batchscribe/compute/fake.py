"""Scripted in-memory compute backend.

Used by the test-suite and for running the service locally without AWS.
Each submitted attempt consumes the next FakeRun script; once the scripts
run out every attempt succeeds after `polls_until_done` polls and writes a
small transcript into the artifact store, mimicking the whisper container.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from batchscribe.compute.base import BackendJobStatus, BackendState, ComputeBackend
from batchscribe.jobs.errors import TransientBackendError
from batchscribe.jobs.models import JobSpec
from batchscribe.storage.base import ArtifactStore


@dataclass
class FakeRun:
    # Returned by successive polls; the last entry repeats forever
    statuses: List[BackendJobStatus]
    # Written under the job's output prefix when the run first reports SUCCEEDED
    outputs: Dict[str, bytes] = field(default_factory=dict)

    @classmethod
    def succeeding(cls, polls: int = 1, outputs: Optional[Dict[str, bytes]] = None) -> "FakeRun":
        running = [BackendJobStatus(state=BackendState.RUNNING)] * (polls - 1)
        return cls(
            statuses=running + [BackendJobStatus(state=BackendState.SUCCEEDED)],
            outputs={"transcript.txt": b"hello\n"} if outputs is None else outputs,
        )

    @classmethod
    def failing(cls, polls: int = 1, retryable: bool = True, detail: str = "Host EC2 terminated") -> "FakeRun":
        running = [BackendJobStatus(state=BackendState.RUNNING)] * (polls - 1)
        failed = BackendJobStatus(state=BackendState.FAILED, detail=detail, retryable=retryable)
        return cls(statuses=running + [failed])

    @classmethod
    def hanging(cls) -> "FakeRun":
        return cls(statuses=[BackendJobStatus(state=BackendState.RUNNING)])


@dataclass
class _FakeJob:
    backend_job_id: str
    name: str
    spec: JobSpec
    run: FakeRun
    polls: int = 0
    cancelled: bool = False
    outputs_written: bool = False


class FakeComputeBackend(ComputeBackend):
    kind = "fake"

    def __init__(
        self,
        runs: Optional[List[FakeRun]] = None,
        store: Optional[ArtifactStore] = None,
        polls_until_done: int = 2,
        poll_delay: float = 0.0,
        submit_delay: float = 0.0,
    ):
        self._runs = list(runs or [])
        self._store = store
        self._polls_until_done = max(1, polls_until_done)
        self._poll_delay = poll_delay
        self._submit_delay = submit_delay
        self._jobs: Dict[str, _FakeJob] = {}
        self._submit_faults: List[bool] = []
        self._poll_faults = 0
        self.calls: Counter = Counter()
        self.submissions: List[str] = []
        self.cancelled: List[str] = []
        self.poll_log: List[str] = []

    def fail_submit(self, times: int = 1, lands: bool = False) -> None:
        """Make the next submits raise TransientBackendError.

        With lands=True the job is created on the backend before the error
        is raised, as when a response is lost in transit.
        """
        self._submit_faults.extend([lands] * times)

    def fail_poll(self, times: int = 1) -> None:
        self._poll_faults += times

    def job_for(self, backend_job_id: str) -> _FakeJob:
        return self._jobs[backend_job_id]

    def _next_run(self, spec: JobSpec) -> FakeRun:
        if self._runs:
            return self._runs.pop(0)
        transcript = f"[{spec.model.model_name}] transcript of {spec.input_file}\n"
        return FakeRun.succeeding(
            polls=self._polls_until_done,
            outputs={"transcript.txt": transcript.encode()},
        )

    async def submit(self, spec: JobSpec, name: str) -> str:
        self.calls["submit"] += 1
        if self._submit_delay:
            await asyncio.sleep(self._submit_delay)
        lands = None
        if self._submit_faults:
            lands = self._submit_faults.pop(0)
            if not lands:
                raise TransientBackendError(f"injected submit failure for {name}")
        backend_job_id = f"fake-{len(self._jobs) + 1}"
        self._jobs[backend_job_id] = _FakeJob(
            backend_job_id=backend_job_id,
            name=name,
            spec=spec,
            run=self._next_run(spec),
        )
        self.submissions.append(name)
        if lands:
            raise TransientBackendError(f"injected lost response for {name}")
        return backend_job_id

    async def poll(self, backend_job_id: str) -> BackendJobStatus:
        self.calls["poll"] += 1
        self.poll_log.append(backend_job_id)
        if self._poll_delay:
            await asyncio.sleep(self._poll_delay)
        if self._poll_faults:
            self._poll_faults -= 1
            raise TransientBackendError(f"injected poll failure for {backend_job_id}")

        job = self._jobs[backend_job_id]
        if job.cancelled:
            return BackendJobStatus(state=BackendState.FAILED, detail="Cancelled by user")

        statuses = job.run.statuses
        status = statuses[min(job.polls, len(statuses) - 1)]
        job.polls += 1
        if status.state is BackendState.SUCCEEDED and not job.outputs_written:
            job.outputs_written = True
            if self._store is not None:
                for name, data in job.run.outputs.items():
                    await self._store.put(job.spec.output_prefix + name, data)
        return status

    async def cancel(self, backend_job_id: str) -> None:
        self.calls["cancel"] += 1
        self.cancelled.append(backend_job_id)
        if backend_job_id in self._jobs:
            self._jobs[backend_job_id].cancelled = True

    async def find(self, name: str) -> Optional[str]:
        self.calls["find"] += 1
        for job in self._jobs.values():
            if job.name == name:
                return job.backend_job_id
        return None
