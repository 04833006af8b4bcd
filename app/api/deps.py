"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from app.pipeline.service import PipelineService


def get_pipeline_service(request: Request) -> PipelineService:
    """The service wired into the app by create_app()."""
    service = getattr(request.app.state, "pipeline", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Pipeline service not initialized")
    return service
