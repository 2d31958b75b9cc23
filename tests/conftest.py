"""
Test Configuration and Fixtures
"""
import asyncio

import pytest

from batchscribe.config import Settings
from batchscribe.jobs.models import JobSpec, WhisperModel
from batchscribe.jobs.state import is_job_terminal
from batchscribe.storage.memory import InMemoryArtifactStore


@pytest.fixture
def config():
    """Settings with intervals short enough for tests"""
    return Settings(
        max_attempts=3,
        poll_interval=0.01,
        poll_jitter=0.2,
        job_timeout=30.0,
        retention_window=3600.0,
        retention_sweep_interval=60.0,
        retry_backoff_base=0.001,
        retry_backoff_max=0.01,
        operation_timeout=2.0,
    )


@pytest.fixture
def store():
    """Artifact store holding one input file"""
    return InMemoryArtifactStore({"in/audio.mp3": b"ID3 fake audio"})


@pytest.fixture
def make_spec():
    def _make(job_id="abc", input_key="in/audio.mp3", model=WhisperModel.LARGE, language="en"):
        return JobSpec(job_id=job_id, input_key=input_key, model=model, language=language)
    return _make


@pytest.fixture
def wait_until():
    """Poll tracker.status until predicate holds (default: terminal state)"""
    async def _wait(tracker, job_id, predicate=None, timeout=5.0):
        predicate = predicate or (lambda r: is_job_terminal(r.state))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            record = await tracker.status(job_id)
            if predicate(record):
                return record
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} stuck in {record.state.value}")
            await asyncio.sleep(0.005)
    return _wait
