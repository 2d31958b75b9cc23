"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from batchscribe.api.v1 import jobs as jobs_api

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, configured backends and job counts."""
    dispatcher = jobs_api._dispatcher
    if dispatcher is None:
        return {"status": "starting", "dispatcher_running": False}

    tracker = dispatcher.tracker
    return {
        "status": "healthy" if tracker.running else "stopped",
        "dispatcher_running": tracker.running,
        "compute_backend": tracker.backend.kind,
        "artifact_store": tracker.store.kind,
        "jobs": tracker.stats(),
        "python_version": sys.version,
        "platform": platform.platform(),
    }
