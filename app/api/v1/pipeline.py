"""Pipeline job API: submit, poll status, cancel, retry, list per project."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import get_pipeline_service
from app.auth.supabase_auth import verify_jwt
from app.jobs.models import JobSubmission, Requester
from app.pipeline.service import PipelineService

router = APIRouter()


class PipelineStartRequest(BaseModel):
    """Body of POST /pipeline/start. Required fields are checked by the job store."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: Optional[str] = Field(None, alias="projectId")
    upload_id: Optional[str] = Field(None, alias="uploadId")
    settings: Optional[Dict[str, Any]] = None
    compliance_checks: Optional[Dict[str, Any]] = Field(None, alias="complianceChecks")
    glossary_id: Optional[str] = Field(None, alias="glossaryId")


@router.post("/pipeline/start")
async def start_pipeline(
    request: PipelineStartRequest,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Create a pipeline job and start it in the background.

    Returns immediately with the queued job and its 8 steps.
    Poll GET /api/v1/pipeline/{job_id}/status for progress.
    """
    submission = JobSubmission(
        project_id=request.project_id or "",
        upload_id=request.upload_id or "",
        settings=request.settings,
        compliance_checks=request.compliance_checks,
        glossary_id=request.glossary_id,
    )
    snapshot = await service.submit_job(submission, requester)
    return snapshot.to_response()


@router.get("/pipeline/{job_id}/status")
async def get_pipeline_status(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Job and steps in pipeline order, plus the polling discipline to follow."""
    snapshot = await service.get_status(job_id, requester)
    return snapshot.to_response()


@router.post("/pipeline/{job_id}/cancel")
async def cancel_pipeline(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    job = await service.cancel_job(job_id, requester)
    return {"job": job.public_dict()}


@router.post("/pipeline/{job_id}/retry")
async def retry_pipeline(
    job_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    """Restart a failed job from its first non-completed step."""
    job = await service.retry_job(job_id, requester)
    return {"job": job.public_dict()}


@router.get("/projects/{project_id}/jobs")
async def list_project_jobs(
    project_id: str,
    requester: Requester = Depends(verify_jwt),
    service: PipelineService = Depends(get_pipeline_service),
):
    jobs = await service.list_project_jobs(project_id, requester)
    return {"jobs": [j.public_dict() for j in jobs]}
