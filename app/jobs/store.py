"""Job store interface and the transition rules every backend enforces.

The store is the single source of truth for job, step, quality report and
export artifact records. Backends implement the storage primitives; the
checks that guard status monotonicity, step ordering and lease ownership
live here so both backends apply the same rules.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Tuple

from app.errors import AccessDenied, LeaseLost, NotFoundError, PreconditionFailed, ValidationError
from app.jobs.directory import ProjectDirectory
from app.jobs.models import (
    ExportArtifact,
    ExportFormat,
    JobStatus,
    JobSubmission,
    PipelineJob,
    PipelineStep,
    QualityReport,
    Requester,
    StepStatus,
    build_steps,
    utcnow,
)


JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
}

STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.QUEUED: frozenset({StepStatus.RUNNING, StepStatus.CANCELLED}),
    StepStatus.RUNNING: frozenset(
        {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.CANCELLED}
    ),
}

FINAL_OUTCOMES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def check_step_transition(
    job: PipelineJob,
    steps: List[PipelineStep],
    step_key: str,
    new_status: StepStatus,
) -> Optional[PipelineStep]:
    """Validate a step transition against the job's current state.

    Returns the step to update, or None when the step already has
    ``new_status`` (re-applying a transition is a no-op).

    Raises:
        NotFoundError: the job has no such step.
        PreconditionFailed: the transition breaks monotonicity or ordering.
    """
    step = next((s for s in steps if s.step_key == step_key), None)
    if step is None:
        raise NotFoundError(f"Step '{step_key}' not found for job {job.id}")

    if step.status == new_status:
        return None

    allowed = STEP_TRANSITIONS.get(step.status, frozenset())
    if new_status not in allowed:
        raise PreconditionFailed(
            f"Step '{step_key}' cannot move from {step.status.value} to {new_status.value}"
        )

    if new_status in (StepStatus.RUNNING, StepStatus.COMPLETED) and job.status != JobStatus.RUNNING:
        raise PreconditionFailed(f"Job {job.id} is {job.status.value}, not running")

    if new_status == StepStatus.RUNNING:
        for other in steps:
            if other.position < step.position and other.status != StepStatus.COMPLETED:
                raise PreconditionFailed(
                    f"Step '{step_key}' cannot start before '{other.step_key}' completes"
                )
            if other.status == StepStatus.RUNNING:
                raise PreconditionFailed(
                    f"Step '{other.step_key}' is already running for job {job.id}"
                )
    return step


def apply_step_transition(
    step: PipelineStep,
    new_status: StepStatus,
    logs: Optional[str] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PipelineStep:
    """Return a copy of ``step`` moved to ``new_status`` with timestamps stamped."""
    now = now or utcnow()
    update = {"status": new_status, "updated_at": now}
    if new_status == StepStatus.RUNNING:
        update["started_at"] = now
    else:
        update["completed_at"] = now
    if logs:
        update["logs"] = logs
    if error_message:
        update["error_message"] = error_message
    return step.model_copy(update=update)


def check_finalize(job: PipelineJob, outcome: JobStatus) -> None:
    """Raise unless ``job`` may be finalized with ``outcome``."""
    if outcome not in FINAL_OUTCOMES:
        raise ValidationError(f"Invalid final outcome '{outcome}'")
    if job.status.is_terminal:
        raise PreconditionFailed(f"Job {job.id} is already {job.status.value}")
    if job.status != JobStatus.RUNNING:
        raise PreconditionFailed(f"Job {job.id} is {job.status.value}, not running")


def check_lease_holder(job: PipelineJob, holder: Optional[str]) -> None:
    """Fence writes made on behalf of a sequencer. ``holder=None`` skips the check."""
    if holder is not None and job.lease_holder != holder:
        raise LeaseLost(f"Job {job.id} is no longer leased to {holder}")


def lease_is_free(job: PipelineJob, now: datetime) -> bool:
    if job.lease_holder is None or job.lease_expires_at is None:
        return True
    return job.lease_expires_at <= now


def lease_expiry(ttl_seconds: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=ttl_seconds)


class JobStore(ABC):
    """Durable storage for pipeline records.

    Concrete backends implement the abstract primitives atomically:
    ``_insert_job`` creates the job and all its steps as one unit, and the
    lease methods are compare-and-swap operations.
    """

    def __init__(self, directory: ProjectDirectory):
        self._directory = directory

    @property
    def directory(self) -> ProjectDirectory:
        return self._directory

    async def submit_job(self, submission: JobSubmission, requester: Requester) -> PipelineJob:
        """Validate a submission and create the job with its full step set."""
        missing = [
            name
            for name, value in (
                ("projectId", submission.project_id),
                ("uploadId", submission.upload_id),
                ("settings", submission.settings),
                ("complianceChecks", submission.compliance_checks),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        if not await self._directory.is_member(requester.user_id, submission.project_id):
            raise AccessDenied("Project not found or access denied")

        upload = await self._directory.get_upload(submission.upload_id)
        if upload is None or upload.project_id != submission.project_id:
            raise NotFoundError("Upload not found")

        now = utcnow()
        job = PipelineJob(
            project_id=submission.project_id,
            upload_id=submission.upload_id,
            glossary_id=submission.glossary_id,
            settings=submission.settings,
            compliance_checks=submission.compliance_checks,
            started_by=requester.user_id,
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        return await self._insert_job(job, build_steps(job.id, now=now))

    async def get_job(self, job_id: str, requester: Requester) -> PipelineJob:
        """Fetch a job the requester may see. Missing and forbidden look the same."""
        job = await self.load_job(job_id)
        if job is None or not await self._directory.is_member(requester.user_id, job.project_id):
            raise NotFoundError("Job not found or access denied")
        return job

    async def require_job(self, job_id: str) -> PipelineJob:
        job = await self.load_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    # -- jobs and steps -------------------------------------------------

    @abstractmethod
    async def _insert_job(self, job: PipelineJob, steps: List[PipelineStep]) -> PipelineJob:
        """Persist a job and its steps in one atomic unit."""
        ...

    @abstractmethod
    async def load_job(self, job_id: str) -> Optional[PipelineJob]:
        """Fetch a job without any access check."""
        ...

    @abstractmethod
    async def list_steps(self, job_id: str) -> List[PipelineStep]:
        """Steps of a job in pipeline order."""
        ...

    @abstractmethod
    async def advance_step(
        self,
        job_id: str,
        step_key: str,
        new_status: StepStatus,
        logs: Optional[str] = None,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineStep:
        """Move one step to ``new_status``.

        When ``holder`` is given the write is fenced: it raises LeaseLost
        unless the job is still leased to that holder.
        """
        ...

    @abstractmethod
    async def finalize_job(
        self,
        job_id: str,
        outcome: JobStatus,
        error_message: Optional[str] = None,
        holder: Optional[str] = None,
    ) -> PipelineJob:
        """Set the final outcome. Fenced by ``holder`` like advance_step()."""
        ...

    @abstractmethod
    async def cancel_job(self, job_id: str) -> PipelineJob:
        """Mark a queued or running job cancelled. Idempotent."""
        ...

    @abstractmethod
    async def list_project_jobs(self, project_id: str) -> List[PipelineJob]:
        """Jobs of a project, newest first."""
        ...

    @abstractmethod
    async def list_recoverable_jobs(self) -> List[str]:
        """Ids of queued jobs and running jobs whose lease has lapsed."""
        ...

    # -- execution lease ------------------------------------------------

    @abstractmethod
    async def acquire_lease(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        """Claim the right to advance a job.

        Succeeds for exactly one caller: either the job moves ``queued ->
        running``, or it is ``running`` with a lapsed lease and is taken
        over. Returns None when someone else holds the job or it is terminal.
        """
        ...

    @abstractmethod
    async def renew_lease(self, job_id: str, holder: str, ttl_seconds: float) -> bool:
        ...

    @abstractmethod
    async def release_lease(self, job_id: str, holder: str) -> None:
        ...

    @abstractmethod
    async def reopen_failed_job(
        self, job_id: str, holder: str, ttl_seconds: float
    ) -> Optional[PipelineJob]:
        """Move a failed job back to running under a new lease.

        Failed steps go back to ``queued``; completed steps are kept.
        Returns None when the job is not failed.
        """
        ...

    # -- terminal artifacts --------------------------------------------

    @abstractmethod
    async def get_quality_report(self, job_id: str) -> Optional[QualityReport]:
        ...

    @abstractmethod
    async def save_quality_report(self, report: QualityReport) -> Tuple[QualityReport, bool]:
        """Insert unless the job already has a report.

        Returns the stored report and whether it was created by this call.
        """
        ...

    @abstractmethod
    async def set_report_pdf_url(self, job_id: str, pdf_url: str) -> None:
        ...

    @abstractmethod
    async def list_exports(self, job_id: str) -> List[ExportArtifact]:
        ...

    @abstractmethod
    async def get_export(self, job_id: str, fmt: ExportFormat) -> Optional[ExportArtifact]:
        ...

    @abstractmethod
    async def save_export(self, artifact: ExportArtifact) -> Tuple[ExportArtifact, bool]:
        """Insert unless (job, format) already exists. Same return shape as reports."""
        ...
