"""Quality report API: fetch scores, render and download the report document."""

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.api.deps import get_pipeline_service
from app.auth.supabase_auth import verify_jwt
from app.jobs.models import Requester
from app.pipeline.service import PipelineService

router = APIRouter()


@router.get("/reports/{job_id}")
async def get_report(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    report = await service.get_quality_report(job_id, requester)
    return {"report": report.model_dump(mode="json")}


@router.post("/reports/{job_id}/generate")
async def generate_report(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    download_url = await service.generate_report(job_id, requester)
    return {"downloadUrl": download_url}


@router.get("/reports/{job_id}/download")
async def download_report(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    payload = await service.download_report(job_id, requester)
    return Response(
        content=payload.content,
        media_type=payload.media_type,
        headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
    )
