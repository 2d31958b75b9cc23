"""
Job tracker lifecycle tests, driven by the in-memory store and fake backend.
"""
import asyncio
import json
from datetime import timedelta

import pytest

from batchscribe.compute.base import BackendJobStatus, BackendState
from batchscribe.compute.fake import FakeComputeBackend, FakeRun
from batchscribe.jobs.errors import DuplicateJobError, NotFoundError
from batchscribe.jobs.models import JobState
from batchscribe.jobs.state import can_transition_job, is_job_terminal
from batchscribe.jobs.tracker import JobTracker
from batchscribe.storage.memory import InMemoryArtifactStore


def run(coro):
    return asyncio.run(coro)


class TestHappyPath:

    def test_job_succeeds_and_writes_completion_marker(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding(polls=1)], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            job_id = await tracker.submit(make_spec("abc", "in/audio.mp3", "large", "en"))
            record = await wait_until(tracker, job_id)
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert record.attempt_count == 1
        assert record.last_error is None
        assert record.backend_job_id == "fake-1"
        assert record.submitted_at is not None
        assert record.finished_at >= record.submitted_at
        assert [c.state for c in record.history] == [
            JobState.PENDING,
            JobState.STAGING,
            JobState.SUBMITTED,
            JobState.RUNNING,
            JobState.SUCCEEDED,
        ]
        objects = store.objects
        assert objects["abc/done"] == b""
        assert objects["abc/in/audio.mp3"] == b"ID3 fake audio"
        assert objects["abc/out/transcript.txt"] == b"hello\n"
        assert backend.submissions == ["abc-1"]

    def test_manifest_describes_the_job(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec(language="auto"))
            await wait_until(tracker, "abc")
            await tracker.stop()

        run(scenario())

        manifest = json.loads(store.objects["abc/job.json"])
        assert manifest["job_id"] == "abc"
        assert manifest["input_key"] == "in/audio.mp3"
        assert manifest["model"] == "large"
        assert manifest["language"] == "auto"
        assert manifest["attempt"] == 1

    def test_default_fake_run_writes_transcript(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=2)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec(model="small"))
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert store.objects["abc/out/transcript.txt"] == b"[small] transcript of audio.mp3\n"
        assert backend.calls["poll"] == 2


class TestRetries:

    def test_retryable_backend_failure_stops_at_max_attempts(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.failing(retryable=True)] * 5, store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.attempt_count == config.max_attempts
        assert backend.submissions == ["abc-1", "abc-2", "abc-3"]
        assert record.last_error.kind == "BackendJobError"
        assert "abc/done" not in store.objects
        states = [c.state for c in record.history]
        assert states.count(JobState.STAGING) == config.max_attempts

    def test_retry_recovers_after_transient_backend_failure(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(
            runs=[FakeRun.failing(retryable=True), FakeRun.succeeding()],
            store=store,
        )

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert record.attempt_count == 2
        assert record.backend_job_id == "fake-2"
        assert record.last_error.kind == "BackendJobError"

    def test_non_retryable_backend_failure_fails_immediately(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(
            runs=[FakeRun.failing(retryable=False, detail="Essential container in task exited")],
            store=store,
        )

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.attempt_count == 1
        assert record.last_error.message == "Essential container in task exited"
        assert backend.calls["submit"] == 1

    def test_transient_staging_errors_are_retried(self, config, store, make_spec, wait_until):
        store.inject_fault("copy", times=2)
        backend = FakeComputeBackend(store=store, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert store.calls["copy"] == 3
        # Storage retries happen inside one attempt
        assert record.attempt_count == 1
        assert record.last_error.kind == "TransientStorageError"

    def test_staging_gives_up_after_max_attempts(self, config, store, make_spec, wait_until):
        store.inject_fault("copy", times=config.max_attempts)
        backend = FakeComputeBackend(store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "TransientStorageError"
        assert [c.state for c in record.history][-2:] == [JobState.STAGING, JobState.FAILED]
        assert backend.calls["submit"] == 0

    def test_missing_input_fails_without_retry(self, config, make_spec, wait_until):
        empty_store = InMemoryArtifactStore()
        backend = FakeComputeBackend(store=empty_store)

        async def scenario():
            tracker = JobTracker(backend, empty_store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "InputNotFoundError"
        assert empty_store.calls["copy"] == 1
        assert backend.calls["submit"] == 0

    def test_input_key_is_never_matched_as_a_prefix(self, config, make_spec, wait_until):
        siblings = InMemoryArtifactStore({"in/talk.wav": b"RIFF", "in/talk.wav.bak": b"RIFF old"})
        backend = FakeComputeBackend(store=siblings, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, siblings, config=config)
            await tracker.submit(make_spec("a1", "in/talk"))
            await tracker.submit(make_spec("a2", "in/talk.wav"))
            partial = await wait_until(tracker, "a1")
            exact = await wait_until(tracker, "a2")
            await tracker.stop()
            return partial, exact

        partial, exact = run(scenario())

        assert partial.state == JobState.FAILED
        assert partial.last_error.kind == "InputNotFoundError"
        assert exact.state == JobState.SUCCEEDED
        staged = sorted(k for k in siblings.objects if "/in/" in k and not k.startswith("in/"))
        assert staged == ["a2/in/talk.wav"]
        assert backend.submissions == ["a2-1"]

    def test_lost_submit_response_is_not_resubmitted(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=1)
        backend.fail_submit(times=1, lands=True)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert backend.submissions == ["abc-1"]
        assert backend.calls["submit"] == 1
        assert backend.calls["find"] == 1

    def test_failed_submit_is_retried_after_checking_backend(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=1)
        backend.fail_submit(times=2)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert backend.calls["submit"] == 3
        assert backend.calls["find"] == 2
        assert backend.submissions == ["abc-1"]

    def test_transient_poll_errors_keep_polling(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding(polls=1)], store=store)
        backend.fail_poll(times=config.max_attempts + 2)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.SUCCEEDED
        assert record.last_error.kind == "TransientBackendError"


class TestEmptyOutput:

    def test_success_without_output_is_a_failure(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding(outputs={})], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "EmptyOutputError"
        assert "abc/done" not in store.objects
        assert backend.calls["submit"] == 1

    def test_zero_byte_outputs_count_as_empty(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(
            runs=[FakeRun.succeeding(outputs={"audio.txt": b""})], store=store
        )

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "EmptyOutputError"

    def test_retry_discards_output_of_failed_attempt(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(
            runs=[FakeRun.failing(retryable=True), FakeRun.succeeding(outputs={})],
            store=store,
        )
        # Partial upload left behind by an interrupted first attempt
        run(store.put("abc/out/partial.txt", b"half a transcript"))

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "EmptyOutputError"
        assert "abc/out/partial.txt" not in store.objects


class TestCancellation:

    def test_cancel_running_job_stops_backend_calls(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            await wait_until(tracker, "abc", lambda r: r.state == JobState.RUNNING)
            polls_before = backend.calls["poll"]
            snapshot = await tracker.cancel("abc")
            await asyncio.sleep(config.poll_interval * 10)
            record = await tracker.status("abc")
            polls_after = backend.calls["poll"]
            await tracker.stop()
            return snapshot, record, polls_before, polls_after

        snapshot, record, polls_before, polls_after = run(scenario())

        assert snapshot.state == JobState.CANCELLED
        assert record.state == JobState.CANCELLED
        assert record.finished_at == snapshot.finished_at
        # At most the poll already in flight when cancel arrived
        assert polls_after <= polls_before + 1
        assert backend.cancelled == [record.backend_job_id]
        assert backend.calls["submit"] == 1

    def test_cancel_finished_job_is_a_noop(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            done = await wait_until(tracker, "abc")
            after = await tracker.cancel("abc")
            await tracker.stop()
            return done, after

        done, after = run(scenario())

        assert after.state == JobState.SUCCEEDED
        assert after.finished_at == done.finished_at
        assert backend.calls["cancel"] == 0

    def test_cancel_unknown_job_raises(self, config, store):
        tracker = JobTracker(FakeComputeBackend(), store, config=config)
        with pytest.raises(NotFoundError):
            run(tracker.cancel("nope"))

    def test_cancel_during_backoff_prevents_submission(self, config, store, make_spec, wait_until):
        slow = config.model_copy(update={"retry_backoff_base": 10.0, "retry_backoff_max": 10.0})
        store.inject_fault("copy", times=1)
        backend = FakeComputeBackend(store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=slow)
            await tracker.submit(make_spec())
            await wait_until(tracker, "abc", lambda r: r.last_error is not None)
            await tracker.cancel("abc")
            await asyncio.sleep(0.05)
            record = await tracker.status("abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.CANCELLED
        assert store.calls["copy"] == 1
        assert backend.calls["submit"] == 0

    def test_cancel_is_not_blocked_by_marker_write(self, config, make_spec, wait_until):
        writing = asyncio.Event()

        class SlowMarkerStore(InMemoryArtifactStore):
            async def put_marker(self, path):
                writing.set()
                await asyncio.sleep(0.5)
                await super().put_marker(path)

        slow_store = SlowMarkerStore({"in/audio.mp3": b"ID3 fake audio"})
        backend = FakeComputeBackend(store=slow_store, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, slow_store, config=config)
            await tracker.submit(make_spec())
            await asyncio.wait_for(writing.wait(), timeout=5.0)
            loop = asyncio.get_running_loop()
            started = loop.time()
            snapshot = await tracker.cancel("abc")
            latency = loop.time() - started
            await asyncio.sleep(0.7)
            record = await tracker.status("abc")
            await tracker.stop()
            return snapshot, record, latency

        snapshot, record, latency = run(scenario())

        assert latency < 0.25
        assert snapshot.state == JobState.CANCELLED
        assert record.state == JobState.CANCELLED
        assert slow_store.calls["put_marker"] == 1
        assert "abc/done" not in slow_store.objects

    def test_stop_cancels_unfinished_jobs(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.start()
            await tracker.submit(make_spec())
            await wait_until(tracker, "abc", lambda r: r.state == JobState.RUNNING)
            await tracker.stop()
            return await tracker.status("abc")

        record = run(scenario())

        assert record.state == JobState.CANCELLED
        assert backend.cancelled == [record.backend_job_id]


class TestTimeouts:

    def test_deadline_times_out_hanging_job(self, config, store, make_spec, wait_until):
        short = config.model_copy(update={"job_timeout": 0.2})
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=short)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await asyncio.sleep(0.05)
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.TIMED_OUT
        assert record.last_error.kind == "JobTimeoutError"
        assert backend.cancelled == [record.backend_job_id]

    def test_slow_backend_call_counts_as_transient(self, config, store, make_spec, wait_until):
        tight = config.model_copy(update={"operation_timeout": 0.05})
        backend = FakeComputeBackend(store=store, submit_delay=0.5)

        async def scenario():
            tracker = JobTracker(backend, store, config=tight)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return record

        record = run(scenario())

        assert record.state == JobState.FAILED
        assert record.last_error.kind == "TransientBackendError"
        assert "timed out" in record.last_error.message


class TestCallbacks:

    def test_pushed_status_replaces_polling(self, config, store, make_spec, wait_until):
        idle = config.model_copy(update={"poll_interval": 10.0})
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=idle)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc", lambda r: r.state == JobState.SUBMITTED)
            await store.put("abc/out/audio.txt", b"transcript")
            accepted = await tracker.notify(
                "abc", BackendJobStatus(state=BackendState.SUCCEEDED), record.backend_job_id
            )
            record = await wait_until(tracker, "abc")
            await tracker.stop()
            return accepted, record

        accepted, record = run(scenario())

        assert accepted is True
        assert record.state == JobState.SUCCEEDED
        assert backend.calls["poll"] == 0

    def test_duplicate_success_callback_has_no_side_effects(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            done = await wait_until(tracker, "abc")
            accepted = await tracker.notify("abc", BackendJobStatus(state=BackendState.SUCCEEDED))
            await asyncio.sleep(0.05)
            after = await tracker.status("abc")
            await tracker.stop()
            return done, accepted, after

        done, accepted, after = run(scenario())

        assert accepted is False
        assert store.calls["put_marker"] == 1
        assert after.finished_at == done.finished_at
        assert after.history == done.history

    def test_status_for_other_backend_job_is_ignored(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            await wait_until(tracker, "abc", lambda r: r.state == JobState.RUNNING)
            accepted = await tracker.notify(
                "abc", BackendJobStatus(state=BackendState.FAILED), backend_job_id="fake-99"
            )
            await asyncio.sleep(0.05)
            record = await tracker.status("abc")
            await tracker.stop()
            return accepted, record

        accepted, record = run(scenario())

        assert accepted is False
        assert record.state == JobState.CANCELLED  # cancelled by stop(), not failed

    def test_callbacks_between_attempts_are_ignored(self, config, store, make_spec, wait_until):
        window = config.model_copy(
            update={"max_attempts": 2, "retry_backoff_base": 0.3, "retry_backoff_max": 0.3}
        )
        backend = FakeComputeBackend(
            runs=[FakeRun.failing(retryable=True), FakeRun.succeeding(polls=3)],
            store=store,
            submit_delay=0.05,
        )
        late = BackendJobStatus(state=BackendState.FAILED, detail="Host EC2 terminated", retryable=True)
        replies = []
        deliveries = []

        async def scenario():
            tracker = JobTracker(backend, store, config=window)

            async def deliver(backend_job_id):
                replies.append(await tracker.notify("abc", late, backend_job_id))

            def on_transition(record):
                # Attempt 2 is staging; its backend job does not exist yet
                if record.state == JobState.STAGING and record.attempt_count == 2:
                    deliveries.append(asyncio.get_running_loop().create_task(deliver(None)))

            tracker.add_listener(on_transition)
            await tracker.submit(make_spec())
            await wait_until(
                tracker, "abc",
                lambda r: r.state == JobState.RUNNING and r.last_error is not None,
            )
            # Backoff after attempt 1: the same failure delivered again
            replies.append(await tracker.notify("abc", late, "fake-1"))
            replies.append(await tracker.notify("abc", late))
            record = await wait_until(tracker, "abc")
            await asyncio.gather(*deliveries)
            await tracker.stop()
            return record

        record = run(scenario())

        assert replies == [False, False, False]
        assert record.state == JobState.SUCCEEDED
        assert record.attempt_count == 2
        assert backend.submissions == ["abc-1", "abc-2"]
        assert backend.poll_log.count("fake-2") == 3
        assert backend.cancelled == []


class TestSerialization:

    def test_concurrent_requests_produce_one_valid_walk(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store, poll_delay=0.02)
        seen = []

        async def scenario():
            tracker = JobTracker(backend, store, config=config, listeners=[seen.append])
            await tracker.submit(make_spec())
            await wait_until(tracker, "abc", lambda r: r.state == JobState.RUNNING)
            status = BackendJobStatus(state=BackendState.SUCCEEDED)
            await asyncio.gather(
                tracker.notify("abc", status),
                tracker.cancel("abc"),
                tracker.notify("abc", status),
                tracker.cancel("abc"),
            )
            record = await wait_until(tracker, "abc")
            await asyncio.sleep(0.05)
            record = await tracker.status("abc")
            await tracker.stop()
            return record

        record = run(scenario())

        states = [c.state for c in record.history]
        assert sum(1 for s in states if is_job_terminal(s)) == 1
        for current, target in zip(states, states[1:]):
            assert can_transition_job(current, target)
        # Listeners saw every transition exactly once, one at a time
        assert [len(s.history) for s in seen] == list(range(2, 2 + len(seen)))
        assert seen[-1].state == record.state

    def test_many_jobs_progress_independently(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=2, poll_delay=0.01)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            ids = [await tracker.submit(make_spec(f"job{i}")) for i in range(10)]
            records = [await wait_until(tracker, job_id) for job_id in ids]
            await tracker.stop()
            return records

        records = run(scenario())

        assert all(r.state == JobState.SUCCEEDED for r in records)
        assert sorted(backend.submissions) == sorted(f"job{i}-1" for i in range(10))
        for i in range(10):
            assert f"job{i}/done" in store.objects


class TestRegistry:

    def test_duplicate_active_job_is_rejected(self, config, store, make_spec):
        backend = FakeComputeBackend(runs=[FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            try:
                with pytest.raises(DuplicateJobError):
                    await tracker.submit(make_spec())
            finally:
                await tracker.stop()

        run(scenario())

    def test_finished_job_id_can_be_reused(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(
            runs=[FakeRun.failing(retryable=False), FakeRun.succeeding()], store=store
        )

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            first = await wait_until(tracker, "abc")
            await tracker.submit(make_spec())
            second = await wait_until(tracker, "abc")
            await tracker.stop()
            return first, second

        first, second = run(scenario())

        assert first.state == JobState.FAILED
        assert second.state == JobState.SUCCEEDED
        assert second.attempt_count == 1

    def test_stop_waits_for_task_of_replaced_job(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, submit_delay=0.3)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            while backend.calls["submit"] == 0:
                await asyncio.sleep(0.005)
            # The first run is still waiting on its submit when it gets replaced
            await tracker.cancel("abc")
            await tracker.submit(make_spec())
            await tracker.stop()
            return await tracker.status("abc")

        record = run(scenario())

        assert record.state == JobState.CANCELLED
        assert backend.submissions == ["abc-1"]
        # The submit that landed after the cancel was withdrawn before stop() returned
        assert backend.cancelled == ["fake-1"]

    def test_status_returns_a_copy(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(store=store, polls_until_done=1)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec())
            record = await wait_until(tracker, "abc")
            record.history.clear()
            record.state = JobState.PENDING
            fresh = await tracker.status("abc")
            await tracker.stop()
            return fresh

        fresh = run(scenario())

        assert fresh.state == JobState.SUCCEEDED
        assert len(fresh.history) == 5

    def test_expired_jobs_are_evicted(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding(), FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec("done1"))
            record = await wait_until(tracker, "done1")
            await tracker.submit(make_spec("busy"))
            later = record.finished_at + timedelta(seconds=config.retention_window + 1)

            assert tracker.evict_expired(now=record.finished_at) == 0
            assert tracker.evict_expired(now=later) == 1
            with pytest.raises(NotFoundError):
                await tracker.status("done1")
            busy = await tracker.status("busy")
            await tracker.stop()
            return busy

        busy = run(scenario())
        assert not is_job_terminal(busy.state)

    def test_list_jobs_filters_by_state(self, config, store, make_spec, wait_until):
        backend = FakeComputeBackend(runs=[FakeRun.succeeding(), FakeRun.hanging()], store=store)

        async def scenario():
            tracker = JobTracker(backend, store, config=config)
            await tracker.submit(make_spec("one"))
            await wait_until(tracker, "one")
            await tracker.submit(make_spec("two"))
            await wait_until(tracker, "two", lambda r: r.state == JobState.RUNNING)
            everything = await tracker.list_jobs()
            succeeded = await tracker.list_jobs(JobState.SUCCEEDED)
            stats = tracker.stats()
            await tracker.stop()
            return everything, succeeded, stats

        everything, succeeded, stats = run(scenario())

        assert [r.job_id for r in everything] == ["one", "two"]
        assert [r.job_id for r in succeeded] == ["one"]
        assert stats["succeeded"] == 1
        assert stats["running"] == 1
