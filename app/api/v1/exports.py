"""Export API: generate archives for a completed job, list and download them."""

from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from pydantic import BaseModel

from app.api.deps import get_pipeline_service
from app.auth.supabase_auth import verify_jwt
from app.errors import ValidationError
from app.jobs.models import Requester
from app.pipeline.service import PipelineService

router = APIRouter()


class ExportGenerateRequest(BaseModel):
    formats: Optional[List[str]] = None


@router.post("/exports/{job_id}/generate")
async def generate_exports(
    job_id: str,
    request: ExportGenerateRequest,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Create the requested export archives. Formats that already exist are returned as-is."""
    if not request.formats:
        raise ValidationError("Formats array is required")
    artifacts = await service.generate_exports(job_id, request.formats, requester)
    return {"exports": [a.model_dump(mode="json") for a in artifacts]}


@router.get("/exports/{job_id}/status")
async def list_exports(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    artifacts = await service.list_exports(job_id, requester)
    return {"exports": [a.model_dump(mode="json") for a in artifacts]}


@router.get("/exports/{job_id}/{fmt}/download")
async def download_export(
    job_id: str,
    fmt: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Stream an export archive.

    fmt is one of: coco | yolo | jsonl
    """
    payload = await service.download_export(job_id, fmt, requester)
    return Response(
        content=payload.content,
        media_type=payload.media_type,
        headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
    )
