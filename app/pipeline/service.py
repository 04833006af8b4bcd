"""Pipeline service: the operations exposed to the HTTP layer.

Wires the job store, dispatcher and artifact producers together, applies the
per-requester access rule (missing and forbidden both read as not found) and
publishes status snapshots. Status reads never write.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from app.errors import NotFoundError, PreconditionFailed, ValidationError
from app.exports.formats import parse_formats
from app.jobs.models import (
    ExportArtifact,
    JobStatus,
    JobSubmission,
    PipelineJob,
    PipelineStep,
    QualityReport,
    Requester,
    StepStatus,
    utcnow,
)
from app.jobs.store import JobStore
from app.pipeline.artifacts import TerminalArtifactProducer
from app.pipeline.dispatcher import JobDispatcher
from app.reports.pdf import (
    render_quality_report_pdf,
    report_download_url,
    report_filename,
    report_storage_path,
)
from app.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class PollSettings(BaseModel):
    """Polling discipline advertised to clients with every status snapshot."""
    interval_ms: int = 2000
    stop_on_terminal: bool = True


class JobProgress(BaseModel):
    completed: int
    total: int


class JobStatusSnapshot(BaseModel):
    """Consistent view of a job and its steps in pipeline order."""
    job: PipelineJob
    steps: List[PipelineStep]
    progress: JobProgress
    poll: PollSettings

    def to_response(self) -> Dict[str, Any]:
        return {
            "job": self.job.public_dict(),
            "steps": [s.model_dump(mode="json") for s in self.steps],
            "progress": self.progress.model_dump(),
            "poll": self.poll.model_dump(),
        }


@dataclass
class DownloadPayload:
    filename: str
    media_type: str
    content: bytes


class PipelineService:
    """Job submission, status, cancellation, retry, exports and reports."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: JobDispatcher,
        producer: TerminalArtifactProducer,
        artifacts: ArtifactStore,
        poll: Optional[PollSettings] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.producer = producer
        self.artifacts = artifacts
        self.poll = poll or PollSettings()

    # -- lifecycle ------------------------------------------------------

    async def submit_job(self, submission: JobSubmission, requester: Requester) -> JobStatusSnapshot:
        """Create a job with its steps and start the sequencer in the background."""
        job = await self.store.submit_job(submission, requester)
        logger.info(
            "Job %s submitted by %s for project %s", job.id, requester.user_id, job.project_id
        )
        snapshot = await self._snapshot(job)
        await self.dispatcher.submit(job.id)
        return snapshot

    async def get_status(self, job_id: str, requester: Requester) -> JobStatusSnapshot:
        job = await self.store.get_job(job_id, requester)
        return await self._snapshot(job)

    async def list_project_jobs(self, project_id: str, requester: Requester) -> List[PipelineJob]:
        if not await self.store.directory.is_member(requester.user_id, project_id):
            raise NotFoundError("Project not found or access denied")
        return await self.store.list_project_jobs(project_id)

    async def cancel_job(self, job_id: str, requester: Requester) -> PipelineJob:
        """Cancel a queued or running job. A running sequencer stops at its next step boundary."""
        await self.store.get_job(job_id, requester)
        job = await self.store.cancel_job(job_id)
        logger.info("Job %s cancelled by %s", job_id, requester.user_id)
        return job

    async def retry_job(self, job_id: str, requester: Requester) -> PipelineJob:
        """Restart a failed job from its first non-completed step."""
        job = await self.store.get_job(job_id, requester)
        if job.status != JobStatus.FAILED:
            raise PreconditionFailed(f"Only failed jobs can be retried (job is {job.status.value})")
        reopened = await self.dispatcher.retry(job_id)
        if reopened is None:
            raise PreconditionFailed("Job is no longer failed")
        logger.info("Job %s retried by %s", job_id, requester.user_id)
        return reopened

    async def _snapshot(self, job: PipelineJob) -> JobStatusSnapshot:
        steps = await self.store.list_steps(job.id)
        completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
        return JobStatusSnapshot(
            job=job,
            steps=steps,
            progress=JobProgress(completed=completed, total=len(steps)),
            poll=self.poll,
        )

    # -- exports --------------------------------------------------------

    async def generate_exports(
        self, job_id: str, formats: List[str], requester: Requester
    ) -> List[ExportArtifact]:
        job = await self.store.get_job(job_id, requester)
        return await self.producer.ensure_exports(job, formats)

    async def list_exports(self, job_id: str, requester: Requester) -> List[ExportArtifact]:
        await self.store.get_job(job_id, requester)
        return await self.store.list_exports(job_id)

    async def download_export(self, job_id: str, fmt: str, requester: Requester) -> DownloadPayload:
        job = await self.store.get_job(job_id, requester)
        try:
            export_format = parse_formats([fmt])[0]
        except ValidationError:
            raise NotFoundError("Export not found or access denied")
        artifact = await self.store.get_export(job_id, export_format)
        if artifact is None:
            raise NotFoundError("Export not found or access denied")
        content = await self.producer.export_payload(job, artifact)
        return DownloadPayload(
            filename=artifact.filename, media_type="application/zip", content=content
        )

    # -- quality report -------------------------------------------------

    async def get_quality_report(self, job_id: str, requester: Requester) -> QualityReport:
        await self.store.get_job(job_id, requester)
        report = await self.store.get_quality_report(job_id)
        if report is None:
            raise NotFoundError("Quality report not found")
        return report

    async def generate_report(self, job_id: str, requester: Requester) -> str:
        """Render the report document, store it, and return its download URL."""
        job = await self.store.get_job(job_id, requester)
        report = await self.get_quality_report(job_id, requester)
        await self._render_report(job, report)
        url = report_download_url(job_id)
        await self.store.set_report_pdf_url(job_id, url)
        return url

    async def download_report(self, job_id: str, requester: Requester) -> DownloadPayload:
        job = await self.store.get_job(job_id, requester)
        report = await self.get_quality_report(job_id, requester)
        content = self.artifacts.read(report_storage_path(job_id))
        if content is None:
            content = await self._render_report(job, report)
        return DownloadPayload(
            filename=report_filename(job_id), media_type="application/pdf", content=content
        )

    async def _render_report(self, job: PipelineJob, report: QualityReport) -> bytes:
        project = await self.store.directory.get_project(job.project_id)
        project_name = project.name if project else job.project_id
        content = render_quality_report_pdf(job, report, project_name, utcnow())
        self.artifacts.write(report_storage_path(job.id), content)
        return content
