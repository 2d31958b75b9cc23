"""batchscribe - transcription job dispatch service (FastAPI application)."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from batchscribe.config import Settings, settings
from batchscribe.api.v1.router import v1_router
from batchscribe.api.v1.health import router as health_root_router
from batchscribe.api.v1 import jobs as jobs_api
from batchscribe.compute.base import ComputeBackend
from batchscribe.jobs.dispatcher import Dispatcher
from batchscribe.jobs.tracker import JobTracker
from batchscribe.storage.base import ArtifactStore

logger = logging.getLogger("batchscribe")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_artifact_store(config: Settings) -> ArtifactStore:
    kind = config.artifact_store
    if kind == "memory":
        from batchscribe.storage.memory import InMemoryArtifactStore
        return InMemoryArtifactStore()
    if kind == "local":
        from batchscribe.storage.local import LocalArtifactStore
        return LocalArtifactStore(config.storage_dir)
    if kind == "s3":
        from batchscribe.storage.s3 import S3ArtifactStore
        return S3ArtifactStore(config.s3_bucket, region=config.aws_region)
    raise ValueError(f"Unknown ARTIFACT_STORE {kind!r} (expected memory, local or s3)")


def build_compute_backend(config: Settings, store: ArtifactStore) -> ComputeBackend:
    kind = config.compute_backend
    if kind == "fake":
        from batchscribe.compute.fake import FakeComputeBackend
        return FakeComputeBackend(store=store, polls_until_done=config.fake_polls_until_done)
    if kind == "aws_batch":
        from batchscribe.compute.aws_batch import AwsBatchBackend
        return AwsBatchBackend(
            config.batch_job_queue,
            config.batch_job_definitions,
            region=config.aws_region,
        )
    raise ValueError(f"Unknown COMPUTE_BACKEND {kind!r} (expected fake or aws_batch)")


def build_dispatcher(config: Settings) -> Dispatcher:
    store = build_artifact_store(config)
    backend = build_compute_backend(config, store)
    tracker = JobTracker(backend, store, config=config)
    return Dispatcher(tracker, completion_marker=config.completion_marker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging(settings.log_level)
    logger.info("Starting batchscribe on port %d", settings.service_port)
    logger.info("Artifact store: %s", settings.artifact_store)
    logger.info("Compute backend: %s", settings.compute_backend)

    dispatcher = build_dispatcher(settings)
    await dispatcher.start()
    jobs_api.set_dispatcher(dispatcher)
    logger.info("Job dispatcher started")

    yield

    logger.info("Shutting down batchscribe")
    await dispatcher.stop()
    jobs_api.set_dispatcher(None)


app = FastAPI(
    title="batchscribe",
    description="Speech-to-text batch job dispatch and lifecycle tracking",
    version="0.1.0",
    lifespan=lifespan,
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
