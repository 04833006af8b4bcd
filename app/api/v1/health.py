"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Service health, job store backend, and in-flight sequencer count."""
    service = getattr(request.app.state, "pipeline", None)
    active = getattr(service.dispatcher, "active_jobs", None) if service else None
    return {
        "status": "healthy" if service is not None else "starting",
        "job_store": type(service.store).__name__ if service else None,
        "active_jobs": active,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
