"""Supabase-backed job store and project directory.

Every state change is a conditional UPDATE (``... WHERE status = <expected>``)
so PostgREST applies it as a single-row compare-and-swap. Job creation goes
through the ``create_pipeline_job`` Postgres function, which inserts the job
and its steps in one transaction (see supabase/migrations).

The supabase client is synchronous; queries run in the default executor so
the event loop keeps serving status polls while the database answers.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from app.errors import InternalError, LeaseLost, NotFoundError, PreconditionFailed
from app.jobs.directory import ProjectDirectory
from app.jobs.models import (
    ExportArtifact,
    ExportFormat,
    JobStatus,
    PipelineJob,
    PipelineStep,
    Project,
    QualityReport,
    StepStatus,
    Upload,
    utcnow,
)
from app.jobs.store import (
    JobStore,
    apply_step_transition,
    check_finalize,
    check_lease_holder,
    check_step_transition,
    lease_expiry,
)

logger = logging.getLogger(__name__)

JOBS = "pipeline_jobs"
STEPS = "pipeline_job_steps"
REPORTS = "quality_reports"
EXPORTS = "export_artifacts"


def _iso(dt: datetime) -> str:
    """Timestamp literal safe to embed in a PostgREST filter."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


async def _execute(query) -> List[Dict[str, Any]]:
    loop = asyncio.get_running_loop()
    try:
        response = await loop.run_in_executor(None, query.execute)
    except Exception as e:
        logger.exception("Supabase query failed")
        raise InternalError("Job store request failed") from e
    data = response.data
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


class SupabaseProjectDirectory(ProjectDirectory):
    """Membership and project lookups against the dashboard tables."""

    def __init__(self, client: Client):
        self._client = client

    async def is_member(self, user_id: str, project_id: str) -> bool:
        rows = await _execute(
            self._client.table("projects")
            .select("id, teams!inner(team_memberships!inner(user_id))")
            .eq("id", project_id)
            .eq("teams.team_memberships.user_id", user_id)
            .limit(1)
        )
        return bool(rows)

    async def get_project(self, project_id: str) -> Optional[Project]:
        rows = await _execute(
            self._client.table("projects")
            .select("id, team_id, name, description")
            .eq("id", project_id)
            .limit(1)
        )
        return Project.model_validate(rows[0]) if rows else None

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        rows = await _execute(
            self._client.table("uploads")
            .select("id, project_id, filename, file_size")
            .eq("id", upload_id)
            .limit(1)
        )
        return Upload.model_validate(rows[0]) if rows else None


class SupabaseJobStore(JobStore):
    """Job store over the ``pipeline_*`` tables."""

    def __init__(self, client: Client, directory: ProjectDirectory):
        super().__init__(directory)
        self._client = client

    def _table(self, name: str):
        return self._client.table(name)

    async def _update_job(self, job_id: str, payload: Dict[str, Any], **filters) -> Optional[PipelineJob]:
        payload = {**payload, "updated_at": _iso(utcnow())}
        query = self._table(JOBS).update(payload).eq("id", job_id)
        for column, value in filters.items():
            query = query.eq(column, value)
        rows = await _execute(query)
        return PipelineJob.model_validate(rows[0]) if rows else None

    async def _fence(self, job_id: str, holder: Optional[str]) -> PipelineJob:
        """Load the job, touching it conditionally on ``lease_holder`` when fenced.

        The conditional UPDATE runs right before the dependent write, so a
        holder that was taken over fails here instead of writing.
        """
        if holder is None:
            return await self.require_job(job_id)
        job = await self._update_job(job_id, {}, lease_holder=holder)
        if job is None:
            raise LeaseLost(f"Job {job_id} is no longer leased to {holder}")
        return job

    async def _insert_job(self, job: PipelineJob, steps: List[PipelineStep]) -> PipelineJob:
        rows = await _execute(
            self._client.rpc(
                "create_pipeline_job",
                {
                    "job": job.model_dump(mode="json"),
                    "steps": [s.model_dump(mode="json") for s in steps],
                },
            )
        )
        if not rows:
            raise InternalError("Failed to create pipeline job")
        return PipelineJob.model_validate(rows[0])

    async def load_job(self, job_id: str) -> Optional[PipelineJob]:
        rows = await _execute(self._table(JOBS).select("*").eq("id", job_id).limit(1))
        return PipelineJob.model_validate(rows[0]) if rows else None

    async def list_steps(self, job_id: str) -> List[PipelineStep]:
        rows = await _execute(
            self._table(STEPS).select("*").eq("job_id", job_id).order("position")
        )
        return [PipelineStep.model_validate(r) for r in rows]

    async def advance_step(
        self,
        job_id: str,
        step_key: str,
        new_status: StepStatus,
        logs: Optional[str] = None,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineStep:
        job = await self._fence(job_id, holder)
        steps = await self.list_steps(job_id)
        step = check_step_transition(job, steps, step_key, new_status)
        if step is None:
            return next(s for s in steps if s.step_key == step_key)

        updated = apply_step_transition(step, new_status, logs, error_message)
        payload = updated.model_dump(
            mode="json",
            include={"status", "started_at", "completed_at", "logs", "error_message", "updated_at"},
        )
        rows = await _execute(
            self._table(STEPS)
            .update(payload)
            .eq("job_id", job_id)
            .eq("step_key", step_key)
            .eq("status", step.status.value)
        )
        if rows:
            return PipelineStep.model_validate(rows[0])

        # Lost the race: succeed only if the competing write reached the same state.
        current = next(
            (s for s in await self.list_steps(job_id) if s.step_key == step_key), None
        )
        if current is not None and current.status == new_status:
            return current
        raise PreconditionFailed(f"Step '{step_key}' changed concurrently")

    async def finalize_job(
        self,
        job_id: str,
        outcome: JobStatus,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineJob:
        job = await self.require_job(job_id)
        check_lease_holder(job, holder)
        check_finalize(job, outcome)
        payload = {"status": outcome.value, "completed_at": _iso(utcnow())}
        if error_message:
            payload["error_message"] = error_message
        filters = {"status": JobStatus.RUNNING.value}
        if holder is not None:
            filters["lease_holder"] = holder
        finalized = await self._update_job(job_id, payload, **filters)
        if finalized is None:
            check_lease_holder(await self.require_job(job_id), holder)
            raise PreconditionFailed(f"Job {job_id} was finalized concurrently")
        return finalized

    async def cancel_job(self, job_id: str) -> PipelineJob:
        payload = {
            "status": JobStatus.CANCELLED.value,
            "completed_at": _iso(utcnow()),
            "updated_at": _iso(utcnow()),
        }
        rows = await _execute(
            self._table(JOBS)
            .update(payload)
            .eq("id", job_id)
            .in_("status", [JobStatus.QUEUED.value, JobStatus.RUNNING.value])
        )
        if rows:
            return PipelineJob.model_validate(rows[0])

        job = await self.require_job(job_id)
        if job.status == JobStatus.CANCELLED:
            return job
        raise PreconditionFailed(f"Job {job_id} is already {job.status.value}")

    async def list_project_jobs(self, project_id: str) -> List[PipelineJob]:
        rows = await _execute(
            self._table(JOBS)
            .select("*")
            .eq("project_id", project_id)
            .order("created_at", desc=True)
        )
        return [PipelineJob.model_validate(r) for r in rows]

    async def list_recoverable_jobs(self) -> List[str]:
        now = _iso(utcnow())
        rows = await _execute(
            self._table(JOBS)
            .select("id")
            .or_(
                "status.eq.queued,"
                "and(status.eq.running,"
                f"or(lease_expires_at.is.null,lease_expires_at.lt.{now}))"
            )
            .order("created_at")
        )
        return [r["id"] for r in rows]

    async def acquire_lease(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        now = utcnow()
        lease = {"lease_holder": holder, "lease_expires_at": _iso(lease_expiry(ttl_seconds, now))}

        job = await self._update_job(
            job_id, {**lease, "status": JobStatus.RUNNING.value}, status=JobStatus.QUEUED.value
        )
        if job is not None:
            return job

        # Take over a running job whose previous holder stopped renewing.
        rows = await _execute(
            self._table(JOBS)
            .update({**lease, "updated_at": _iso(now)})
            .eq("id", job_id)
            .eq("status", JobStatus.RUNNING.value)
            .or_(f"lease_expires_at.is.null,lease_expires_at.lt.{_iso(now)}")
        )
        return PipelineJob.model_validate(rows[0]) if rows else None

    async def renew_lease(self, job_id: str, holder: str, ttl_seconds: float) -> bool:
        job = await self._update_job(
            job_id,
            {"lease_expires_at": _iso(lease_expiry(ttl_seconds))},
            lease_holder=holder,
        )
        return job is not None

    async def release_lease(self, job_id: str, holder: str) -> None:
        await self._update_job(
            job_id, {"lease_holder": None, "lease_expires_at": None}, lease_holder=holder
        )

    async def reopen_failed_job(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        job = await self.require_job(job_id)
        if job.status != JobStatus.FAILED:
            return None

        # Steps first: a failed job with reset steps is still a valid failed job.
        await _execute(
            self._table(STEPS)
            .update({
                "status": StepStatus.QUEUED.value,
                "started_at": None,
                "completed_at": None,
                "error_message": None,
                "updated_at": _iso(utcnow()),
            })
            .eq("job_id", job_id)
            .eq("status", StepStatus.FAILED.value)
        )
        return await self._update_job(
            job_id,
            {
                "status": JobStatus.RUNNING.value,
                "completed_at": None,
                "error_message": None,
                "lease_holder": holder,
                "lease_expires_at": _iso(lease_expiry(ttl_seconds)),
            },
            status=JobStatus.FAILED.value,
        )

    async def get_quality_report(self, job_id: str) -> Optional[QualityReport]:
        rows = await _execute(self._table(REPORTS).select("*").eq("job_id", job_id).limit(1))
        return QualityReport.model_validate(rows[0]) if rows else None

    async def save_quality_report(self, report: QualityReport) -> Tuple[QualityReport, bool]:
        rows = await _execute(
            self._table(REPORTS).upsert(
                report.model_dump(mode="json"), on_conflict="job_id", ignore_duplicates=True
            )
        )
        if rows:
            return QualityReport.model_validate(rows[0]), True
        existing = await self.get_quality_report(report.job_id)
        if existing is None:
            raise InternalError("Failed to store quality report")
        return existing, False

    async def set_report_pdf_url(self, job_id: str, pdf_url: str) -> None:
        rows = await _execute(
            self._table(REPORTS).update({"pdf_url": pdf_url}).eq("job_id", job_id)
        )
        if not rows:
            raise NotFoundError("Quality report not found")

    async def list_exports(self, job_id: str) -> List[ExportArtifact]:
        rows = await _execute(
            self._table(EXPORTS).select("*").eq("job_id", job_id).order("created_at")
        )
        return [ExportArtifact.model_validate(r) for r in rows]

    async def get_export(self, job_id: str, fmt: ExportFormat) -> Optional[ExportArtifact]:
        rows = await _execute(
            self._table(EXPORTS)
            .select("*")
            .eq("job_id", job_id)
            .eq("format", fmt.value)
            .limit(1)
        )
        return ExportArtifact.model_validate(rows[0]) if rows else None

    async def save_export(self, artifact: ExportArtifact) -> Tuple[ExportArtifact, bool]:
        rows = await _execute(
            self._table(EXPORTS).upsert(
                artifact.model_dump(mode="json"),
                on_conflict="job_id,format",
                ignore_duplicates=True,
            )
        )
        if rows:
            return ExportArtifact.model_validate(rows[0]), True
        existing = await self.get_export(artifact.job_id, artifact.format)
        if existing is None:
            raise InternalError(f"Failed to store {artifact.format.value} export")
        return existing, False
