"""In-process job store.

Keeps every record in dictionaries guarded by a single asyncio lock, so each
operation is atomic with respect to other coroutines on the same loop.
Records are copied on the way in and out; callers never share state with
the store.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from app.errors import NotFoundError, PreconditionFailed
from app.jobs.directory import ProjectDirectory
from app.jobs.models import (
    ExportArtifact,
    ExportFormat,
    JobStatus,
    PipelineJob,
    PipelineStep,
    QualityReport,
    StepStatus,
    utcnow,
)
from app.jobs.store import (
    JobStore,
    apply_step_transition,
    check_finalize,
    check_lease_holder,
    check_step_transition,
    lease_expiry,
    lease_is_free,
)


class InMemoryJobStore(JobStore):
    """Local job store for tests and single-process runs."""

    def __init__(self, directory: ProjectDirectory):
        super().__init__(directory)
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, PipelineJob] = {}
        self._steps: Dict[str, List[PipelineStep]] = {}
        self._reports: Dict[str, QualityReport] = {}
        self._exports: Dict[str, Dict[ExportFormat, ExportArtifact]] = {}

    def _job(self, job_id: str) -> PipelineJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _put_job(self, job: PipelineJob, **update) -> PipelineJob:
        update.setdefault("updated_at", utcnow())
        stored = job.model_copy(update=update)
        self._jobs[job.id] = stored
        return stored.model_copy(deep=True)

    async def _insert_job(self, job: PipelineJob, steps: List[PipelineStep]) -> PipelineJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._steps[job.id] = [s.model_copy(deep=True) for s in steps]
            return job.model_copy(deep=True)

    async def load_job(self, job_id: str) -> Optional[PipelineJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_steps(self, job_id: str) -> List[PipelineStep]:
        steps = self._steps.get(job_id, [])
        return [s.model_copy(deep=True) for s in sorted(steps, key=lambda s: s.position)]

    async def advance_step(
        self,
        job_id: str,
        step_key: str,
        new_status: StepStatus,
        logs: Optional[str] = None,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineStep:
        async with self._lock:
            job = self._job(job_id)
            check_lease_holder(job, holder)
            steps = self._steps[job_id]
            step = check_step_transition(job, steps, step_key, new_status)
            if step is None:
                current = next(s for s in steps if s.step_key == step_key)
                return current.model_copy(deep=True)
            updated = apply_step_transition(step, new_status, logs, error_message)
            self._steps[job_id] = [updated if s.step_key == step_key else s for s in steps]
            return updated.model_copy(deep=True)

    async def finalize_job(
        self,
        job_id: str,
        outcome: JobStatus,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineJob:
        async with self._lock:
            job = self._job(job_id)
            check_lease_holder(job, holder)
            check_finalize(job, outcome)
            update = {"status": outcome, "completed_at": utcnow()}
            if error_message:
                update["error_message"] = error_message
            return self._put_job(job, **update)

    async def cancel_job(self, job_id: str) -> PipelineJob:
        async with self._lock:
            job = self._job(job_id)
            if job.status == JobStatus.CANCELLED:
                return job.model_copy(deep=True)
            if job.status.is_terminal:
                raise PreconditionFailed(f"Job {job_id} is already {job.status.value}")
            return self._put_job(job, status=JobStatus.CANCELLED, completed_at=utcnow())

    async def list_project_jobs(self, project_id: str) -> List[PipelineJob]:
        jobs = [j for j in self._jobs.values() if j.project_id == project_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]

    async def list_recoverable_jobs(self) -> List[str]:
        now = utcnow()
        return [
            j.id
            for j in sorted(self._jobs.values(), key=lambda j: j.created_at)
            if j.status == JobStatus.QUEUED
            or (j.status == JobStatus.RUNNING and lease_is_free(j, now))
        ]

    async def acquire_lease(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            now = utcnow()
            expires = lease_expiry(ttl_seconds, now)
            if job.status == JobStatus.QUEUED:
                return self._put_job(
                    job, status=JobStatus.RUNNING, lease_holder=holder, lease_expires_at=expires
                )
            if job.status == JobStatus.RUNNING and lease_is_free(job, now):
                return self._put_job(job, lease_holder=holder, lease_expires_at=expires)
            return None

    async def renew_lease(self, job_id: str, holder: str, ttl_seconds: float) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.lease_holder != holder:
                return False
            self._put_job(job, lease_expires_at=lease_expiry(ttl_seconds))
            return True

    async def release_lease(self, job_id: str, holder: str) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.lease_holder == holder:
                self._put_job(job, lease_holder=None, lease_expires_at=None)

    async def reopen_failed_job(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        async with self._lock:
            job = self._job(job_id)
            if job.status != JobStatus.FAILED:
                return None
            now = utcnow()
            self._steps[job_id] = [
                s.model_copy(update={
                    "status": StepStatus.QUEUED,
                    "started_at": None,
                    "completed_at": None,
                    "error_message": None,
                    "updated_at": now,
                })
                if s.status == StepStatus.FAILED else s
                for s in self._steps[job_id]
            ]
            return self._put_job(
                job,
                status=JobStatus.RUNNING,
                completed_at=None,
                error_message=None,
                lease_holder=holder,
                lease_expires_at=lease_expiry(ttl_seconds, now),
                updated_at=now,
            )

    async def get_quality_report(self, job_id: str) -> Optional[QualityReport]:
        report = self._reports.get(job_id)
        return report.model_copy(deep=True) if report else None

    async def save_quality_report(self, report: QualityReport) -> Tuple[QualityReport, bool]:
        async with self._lock:
            existing = self._reports.get(report.job_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._reports[report.job_id] = report.model_copy(deep=True)
            return report.model_copy(deep=True), True

    async def set_report_pdf_url(self, job_id: str, pdf_url: str) -> None:
        async with self._lock:
            report = self._reports.get(job_id)
            if report is None:
                raise NotFoundError("Quality report not found")
            self._reports[job_id] = report.model_copy(update={"pdf_url": pdf_url})

    async def list_exports(self, job_id: str) -> List[ExportArtifact]:
        by_format = self._exports.get(job_id, {})
        return [a.model_copy(deep=True) for a in by_format.values()]

    async def get_export(self, job_id: str, fmt: ExportFormat) -> Optional[ExportArtifact]:
        artifact = self._exports.get(job_id, {}).get(fmt)
        return artifact.model_copy(deep=True) if artifact else None

    async def save_export(self, artifact: ExportArtifact) -> Tuple[ExportArtifact, bool]:
        async with self._lock:
            by_format = self._exports.setdefault(artifact.job_id, {})
            existing = by_format.get(artifact.format)
            if existing is not None:
                return existing.model_copy(deep=True), False
            by_format[artifact.format] = artifact.model_copy(deep=True)
            return artifact.model_copy(deep=True), True
