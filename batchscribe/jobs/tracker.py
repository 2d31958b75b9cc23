"""Job tracker: drives transcription jobs through their lifecycle.

Each accepted job gets one owning asyncio task that walks it through
staging, submission and polling. Cancellation, deadlines and pushed
backend statuses never mutate a job directly from outside; they take the
job's lock, apply at most one transition, and wake the owning task, which
notices at its next suspension point (a poll sleep or a backoff sleep).

All storage and backend calls are bounded by `operation_timeout`, and the
tracker is the only place that retries them.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Type

from batchscribe.compute.base import BackendJobStatus, BackendState, ComputeBackend
from batchscribe.config import Settings, settings as default_settings
from batchscribe.jobs.errors import (
    ArtifactNotFoundError,
    BackendError,
    BackendJobError,
    DuplicateJobError,
    EmptyOutputError,
    InputNotFoundError,
    JobActiveError,
    JobError,
    JobTimeoutError,
    NotFoundError,
    StorageError,
    TransientBackendError,
    TransientStorageError,
)
from batchscribe.jobs.models import ErrorInfo, JobRecord, JobSpec, JobState, StateChange, utcnow
from batchscribe.jobs.policy import backoff_delay, jittered
from batchscribe.jobs.state import is_job_terminal, validate_job_transition
from batchscribe.storage.base import ArtifactStore

logger = logging.getLogger(__name__)

TransitionListener = Callable[[JobRecord], None]


class _JobStopped(Exception):
    """The job went terminal outside its owning task (cancel or deadline)."""


class _TrackedJob:
    """Tracker-private state of one job. Only copies of `record` leave the tracker."""

    def __init__(self, record: JobRecord):
        self.record = record
        self.lock = asyncio.Lock()
        self.wakeup = asyncio.Event()
        self.terminal = False
        self.stop_requested = False
        self.pushed: Optional[BackendJobStatus] = None
        # Backend job whose statuses are currently awaited; None between attempts
        self.watching: Optional[str] = None
        self.task: Optional[asyncio.Task] = None
        self.deadline: Optional[asyncio.TimerHandle] = None

    @property
    def job_id(self) -> str:
        return self.record.spec.job_id

    def snapshot(self) -> JobRecord:
        return self.record.model_copy(deep=True)


class JobTracker:
    """Owns the live job map and every job's state machine."""

    def __init__(
        self,
        backend: ComputeBackend,
        store: ArtifactStore,
        config: Optional[Settings] = None,
        listeners: Optional[List[TransitionListener]] = None,
        rng=None,
    ):
        self._backend = backend
        self._store = store
        self._config = config or default_settings
        self._listeners: List[TransitionListener] = list(listeners or [])
        self._rng = rng
        self._jobs: Dict[str, _TrackedJob] = {}
        self._background: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._running = False

    @property
    def backend(self) -> ComputeBackend:
        return self._backend

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(self, spec: JobSpec) -> str:
        """Start tracking spec. Returns immediately; the job runs in the background."""
        existing = self._jobs.get(spec.job_id)
        if existing is not None:
            if not existing.terminal:
                raise DuplicateJobError(spec.job_id)
            self._retire(existing)

        now = utcnow()
        job = _TrackedJob(JobRecord(
            spec=spec,
            created_at=now,
            updated_at=now,
            history=[StateChange(state=JobState.PENDING, at=now)],
        ))
        self._jobs[spec.job_id] = job

        loop = asyncio.get_running_loop()
        job.deadline = loop.call_later(self._config.job_timeout, self._on_deadline, job)
        job.task = loop.create_task(self._drive(job), name=f"job-{spec.job_id}")
        logger.info(
            "Accepted job %s (model=%s, language=%s, input=%s)",
            spec.job_id, spec.model.value, spec.language, spec.input_key,
        )
        return spec.job_id

    async def status(self, job_id: str) -> JobRecord:
        return self._get(job_id).snapshot()

    async def list_jobs(self, state: Optional[JobState] = None) -> List[JobRecord]:
        records = [
            job.snapshot() for job in self._jobs.values()
            if state is None or job.record.state is state
        ]
        return sorted(records, key=lambda r: r.created_at)

    async def cancel(self, job_id: str) -> JobRecord:
        """Cancel a job. A no-op for jobs that already finished."""
        job = self._get(job_id)
        async with job.lock:
            changed = self._transition(job, JobState.CANCELLED)
            backend_job_id = job.record.backend_job_id
        if changed and backend_job_id:
            await self._cancel_backend(job, backend_job_id)
        return job.snapshot()

    async def notify(
        self,
        job_id: str,
        status: BackendJobStatus,
        backend_job_id: Optional[str] = None,
    ) -> bool:
        """Hand an externally observed backend status to the job's owning task.

        Returns False when the status was ignored: the job already finished,
        no backend job is being watched (staging, or backoff between
        attempts), or the status belongs to a different backend job.
        """
        job = self._get(job_id)
        async with job.lock:
            if job.terminal:
                logger.debug("Ignoring %s status for finished job %s", status.state.value, job_id)
                return False
            if job.watching is None:
                logger.debug("Ignoring %s status for job %s between attempts", status.state.value, job_id)
                return False
            if backend_job_id is not None and backend_job_id != job.watching:
                logger.debug("Ignoring status of stale backend job %s for %s", backend_job_id, job_id)
                return False
            job.pushed = status
            job.wakeup.set()
            return True

    def forget(self, job_id: str) -> bool:
        """Drop a finished job from the live set. Returns False if it was not tracked."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if not job.terminal:
            raise JobActiveError(job_id)
        self._retire(self._jobs.pop(job_id))
        return True

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop jobs that finished more than `retention_window` ago."""
        cutoff = (now or utcnow()) - timedelta(seconds=self._config.retention_window)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.terminal and job.record.finished_at is not None
            and job.record.finished_at <= cutoff
        ]
        for job_id in expired:
            self._retire(self._jobs.pop(job_id))
        if expired:
            logger.info("Evicted %d expired job(s)", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.record.state.value] += 1
        return counts

    async def start(self) -> None:
        self._running = True
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel all unfinished jobs and wait for their tasks to wind down."""
        self._running = False
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        active = [job_id for job_id, job in self._jobs.items() if not job.terminal]
        if active:
            logger.info("Cancelling %d unfinished job(s) on shutdown", len(active))
            await asyncio.gather(*(self.cancel(job_id) for job_id in active))

        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        tasks.extend(t for t in self._background if not t.done())
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=self._config.operation_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for job in self._jobs.values():
            if job.deadline:
                job.deadline.cancel()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _retire(self, job: _TrackedJob) -> None:
        """Keep a dropped job's owning task visible to stop() until it winds down."""
        task = job.task
        if task is not None and not task.done():
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _get(self, job_id: str) -> _TrackedJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def _transition(self, job: _TrackedJob, target: JobState, error: Optional[ErrorInfo] = None) -> bool:
        """Apply one transition; the caller holds job.lock.

        Returns False, changing nothing, once the job is terminal.
        """
        if job.terminal:
            return False
        record = job.record
        previous = record.state
        validate_job_transition(previous, target)

        now = utcnow()
        record.state = target
        record.updated_at = now
        record.history.append(StateChange(state=target, at=now))
        if error is not None:
            record.last_error = error
        if target is JobState.STAGING:
            record.attempt_count += 1
        elif target is JobState.SUBMITTED:
            record.submitted_at = now

        if is_job_terminal(target):
            job.terminal = True
            job.stop_requested = True
            record.finished_at = now
            job.wakeup.set()
            if job.deadline:
                job.deadline.cancel()

        logger.info("Job %s: %s -> %s", job.job_id, previous.value, target.value)
        for listener in self._listeners:
            try:
                listener(job.snapshot())
            except Exception:
                logger.exception("Transition listener failed for job %s", job.job_id)
        return True

    def _advance(self, job: _TrackedJob, target: JobState) -> None:
        if not self._transition(job, target):
            raise _JobStopped()

    def _note_error(self, job: _TrackedJob, exc: BaseException) -> None:
        if not job.terminal:
            job.record.last_error = ErrorInfo.from_exception(exc)
            job.record.updated_at = utcnow()

    async def _fail(self, job: _TrackedJob, exc: BaseException) -> None:
        async with job.lock:
            self._transition(job, JobState.FAILED, ErrorInfo.from_exception(exc))

    # ------------------------------------------------------------------
    # Owning task
    # ------------------------------------------------------------------

    async def _drive(self, job: _TrackedJob) -> None:
        try:
            await self._run_attempts(job)
        except _JobStopped:
            logger.debug("Job %s stopped in state %s", job.job_id, job.record.state.value)
        except JobError as exc:
            logger.warning("Job %s failed: %s", job.job_id, exc)
            await self._fail(job, exc)
        except Exception as exc:
            logger.exception("Unexpected failure while driving job %s", job.job_id)
            await self._fail(job, exc)

    async def _run_attempts(self, job: _TrackedJob) -> None:
        max_attempts = self._config.max_attempts
        while True:
            async with job.lock:
                self._advance(job, JobState.STAGING)
            await self._stage(job)
            backend_job_id = await self._submit(job)
            status = await self._watch(job, backend_job_id)

            if status.state is BackendState.SUCCEEDED:
                await self._complete(job)
                return

            error = BackendJobError(status.detail or f"Backend job {backend_job_id} failed")
            attempt = job.record.attempt_count
            if not status.retryable or attempt >= max_attempts:
                raise error

            self._note_error(job, error)
            delay = backoff_delay(attempt, self._config.retry_backoff_base, self._config.retry_backoff_max)
            logger.warning(
                "Attempt %d/%d of job %s failed (%s); retrying in %.1fs",
                attempt, max_attempts, job.job_id, error, delay,
            )
            await self._pause(job, delay)

    async def _stage(self, job: _TrackedJob) -> None:
        spec = job.record.spec
        if job.record.attempt_count > 1:
            # Leftovers of a failed attempt would fool the empty-output check
            await self._with_retries(
                job, "clear stale output",
                lambda: self._store.delete_prefix(spec.output_prefix),
                TransientStorageError,
            )

        # Exact key only; in/audio.mp3 must not also stage in/audio.mp3.bak
        try:
            await self._with_retries(
                job, "stage input",
                lambda: self._store.copy(spec.input_key, spec.staged_input_key),
                TransientStorageError,
            )
        except ArtifactNotFoundError as exc:
            raise InputNotFoundError(f"No input artifact at {spec.input_key}") from exc

        manifest = json.dumps({
            "job_id": spec.job_id,
            "input_key": spec.input_key,
            "model": spec.model.value,
            "language": spec.language,
            "created_at": job.record.created_at.isoformat(),
            "attempt": job.record.attempt_count,
        }).encode()
        await self._with_retries(
            job, "write manifest",
            lambda: self._store.put(spec.manifest_key, manifest),
            TransientStorageError,
        )

    async def _submit(self, job: _TrackedJob) -> str:
        spec = job.record.spec
        name = spec.submission_name(job.record.attempt_count)
        uncertain = False

        async def submit_once() -> str:
            nonlocal uncertain
            # A failed or timed-out submit may still have created the job
            if uncertain:
                existing = await self._backend.find(name)
                if existing is not None:
                    logger.info("Found earlier submission %s of job %s", existing, job.job_id)
                    return existing
            uncertain = True
            return await self._backend.submit(spec, name)

        try:
            backend_job_id = await self._with_retries(job, "submit", submit_once, TransientBackendError)
        except _JobStopped:
            if uncertain:
                await self._cancel_orphan(job, name)
            raise

        async with job.lock:
            stopped = job.terminal
            if not stopped:
                job.record.backend_job_id = backend_job_id
                job.pushed = None
                job.watching = backend_job_id
                self._advance(job, JobState.SUBMITTED)
        if stopped:
            await self._cancel_backend(job, backend_job_id)
            raise _JobStopped()
        return backend_job_id

    async def _watch(self, job: _TrackedJob, backend_job_id: str) -> BackendJobStatus:
        """Poll until the backend reports a finished status; the job is then RUNNING."""
        while True:
            await self._pause(job, jittered(self._config.poll_interval, self._config.poll_jitter, self._rng))
            status, job.pushed = job.pushed, None
            if status is None:
                try:
                    status = await self._call(self._backend.poll(backend_job_id), TransientBackendError, "poll")
                except TransientBackendError as exc:
                    self._note_error(job, exc)
                    logger.warning("Polling job %s failed: %s", job.job_id, exc)
                    continue
            self._check_stop(job)

            if status.state is not BackendState.QUEUED and job.record.state is JobState.SUBMITTED:
                async with job.lock:
                    self._advance(job, JobState.RUNNING)
            if status.state.finished:
                async with job.lock:
                    # Later callbacks about this backend job must not reach the next attempt
                    job.watching = None
                    job.pushed = None
                    job.wakeup.clear()
                self._check_stop(job)
                return status

    async def _complete(self, job: _TrackedJob) -> None:
        spec = job.record.spec
        has_output = await self._with_retries(
            job, "check output",
            lambda: self._store.exists_nonempty(spec.output_prefix),
            TransientStorageError,
        )
        if not has_output:
            raise EmptyOutputError(f"Compute job finished without output under {spec.output_prefix}")

        marker = spec.marker_key(self._config.completion_marker)
        await self._with_retries(
            job, "write completion marker",
            lambda: self._store.put_marker(marker),
            TransientStorageError,
        )
        async with job.lock:
            succeeded = self._transition(job, JobState.SUCCEEDED)
        if not succeeded:
            # Cancelled or timed out while the marker was in flight
            await self._retract_marker(job, marker)
            raise _JobStopped()

    async def _retract_marker(self, job: _TrackedJob, marker: str) -> None:
        try:
            await self._call(self._store.delete([marker]), TransientStorageError, "remove marker")
        except StorageError as exc:
            logger.warning("Could not remove completion marker of stopped job %s: %s", job.job_id, exc)

    # ------------------------------------------------------------------
    # Suspension points, retries and timeouts
    # ------------------------------------------------------------------

    def _check_stop(self, job: _TrackedJob) -> None:
        if job.stop_requested:
            raise _JobStopped()

    async def _pause(self, job: _TrackedJob, delay: float) -> None:
        """Sleep up to delay; returns early when woken, raises if the job was stopped."""
        self._check_stop(job)
        if delay > 0:
            try:
                await asyncio.wait_for(job.wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        job.wakeup.clear()
        self._check_stop(job)

    async def _call(self, coro: Awaitable, transient: Type[JobError], what: str):
        timeout = self._config.operation_timeout
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise transient(f"{what} timed out after {timeout:g}s") from exc

    async def _with_retries(
        self,
        job: _TrackedJob,
        what: str,
        op: Callable[[], Awaitable],
        transient: Type[JobError],
    ):
        attempts = self._config.max_attempts
        for step in range(1, attempts + 1):
            self._check_stop(job)
            try:
                return await self._call(op(), transient, what)
            except transient as exc:
                self._note_error(job, exc)
                if step == attempts:
                    raise
                delay = backoff_delay(step, self._config.retry_backoff_base, self._config.retry_backoff_max)
                logger.warning(
                    "%s failed for job %s (try %d/%d): %s; retrying in %.1fs",
                    what, job.job_id, step, attempts, exc, delay,
                )
                await self._pause(job, delay)

    # ------------------------------------------------------------------
    # Backend cancellation, deadlines, retention
    # ------------------------------------------------------------------

    async def _cancel_backend(self, job: _TrackedJob, backend_job_id: str) -> None:
        try:
            await self._call(self._backend.cancel(backend_job_id), TransientBackendError, "cancel")
        except BackendError as exc:
            logger.warning("Could not cancel backend job %s of %s: %s", backend_job_id, job.job_id, exc)

    async def _cancel_orphan(self, job: _TrackedJob, name: str) -> None:
        try:
            backend_job_id = await self._call(self._backend.find(name), TransientBackendError, "find")
        except BackendError as exc:
            logger.warning("Could not look up submission %s of stopped job %s: %s", name, job.job_id, exc)
            return
        if backend_job_id is not None:
            await self._cancel_backend(job, backend_job_id)

    def _on_deadline(self, job: _TrackedJob) -> None:
        task = asyncio.get_running_loop().create_task(self._expire(job))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _expire(self, job: _TrackedJob) -> None:
        error = JobTimeoutError(f"Job exceeded its {self._config.job_timeout:g}s deadline")
        async with job.lock:
            changed = self._transition(job, JobState.TIMED_OUT, ErrorInfo.from_exception(error))
            backend_job_id = job.record.backend_job_id
        if not changed:
            return
        logger.warning("Job %s timed out", job.job_id)
        if backend_job_id:
            await self._cancel_backend(job, backend_job_id)

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.retention_sweep_interval)
            except asyncio.CancelledError:
                break
            self.evict_expired()
