"""Terminal artifact producers: quality report and export archives.

Both run once a job is completed and are idempotent per job: a second call
returns what the first one stored instead of creating duplicates.
"""

import hashlib
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

from app.errors import PreconditionFailed
from app.exports.formats import (
    export_download_url,
    export_filename,
    export_storage_path,
    parse_formats,
    render_export,
)
from app.jobs.models import (
    STEP_KEYS,
    ExportArtifact,
    HistogramBucket,
    JobStatus,
    PipelineJob,
    QualityReport,
)
from app.jobs.store import JobStore
from app.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)

MODEL_VERSIONS = {
    "translator": "qwen3-7b-instruct",
    "deid": "phi-detector-v2.1",
    "qa": "medical-qa-scorer-v1.3",
}

HISTOGRAM_BUCKETS = ("0-20", "20-40", "40-60", "60-80", "80-100")


def pipeline_fingerprint(job: PipelineJob) -> str:
    """Stable hash of the step list, settings and model versions used for a job."""
    material = json.dumps(
        {"steps": STEP_KEYS, "settings": job.settings, "models": MODEL_VERSIONS},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:12]


class QualityScorer(ABC):
    """Produces the quality assessment of a completed job."""

    @abstractmethod
    def score(self, job: PipelineJob) -> QualityReport:
        ...


class SimulatedQualityScorer(QualityScorer):
    """Placeholder scores drawn from fixed plausible ranges."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def score(self, job: PipelineJob) -> QualityReport:
        r = self._rng
        histogram_ranges = ((0, 4), (5, 14), (15, 29), (30, 49), (20, 34))
        return QualityReport(
            job_id=job.id,
            overall_score=r.randint(75, 94),
            component_scores={
                "term_consistency": r.randint(70, 94),
                "glossary_adherence": r.randint(80, 94),
                "label_text_alignment": r.randint(65, 94),
                "fluency": r.randint(85, 94),
            },
            pass_fail_stats={
                "pass": r.randint(60, 79),
                "warn": r.randint(15, 29),
                "fail": r.randint(5, 19),
            },
            histogram_data=[
                HistogramBucket(bucket=name, count=r.randint(low, high))
                for name, (low, high) in zip(HISTOGRAM_BUCKETS, histogram_ranges)
            ],
            report_data={
                "pipeline_hash": pipeline_fingerprint(job),
                "model_versions": dict(MODEL_VERSIONS),
            },
        )


def _require_completed(job: PipelineJob, what: str) -> None:
    if job.status != JobStatus.COMPLETED:
        raise PreconditionFailed(
            f"Job must be completed before generating {what}", status_code=400
        )


class TerminalArtifactProducer:
    """Creates the quality report and export archives of a completed job."""

    def __init__(
        self,
        store: JobStore,
        artifacts: ArtifactStore,
        scorer: Optional[QualityScorer] = None,
        default_formats: Sequence[str] = ("coco", "yolo", "jsonl"),
    ):
        self._store = store
        self._artifacts = artifacts
        self._scorer = scorer or SimulatedQualityScorer()
        self._default_formats = parse_formats(default_formats)

    async def produce(self, job_id: str) -> None:
        """Run every producer for a job that just completed."""
        job = await self._store.require_job(job_id)
        report = await self.ensure_quality_report(job)
        exports = await self.ensure_exports(job, [f.value for f in self._default_formats])
        logger.info(
            "Job %s: quality report %s (score %d), %d export(s)",
            job_id, report.id, report.overall_score, len(exports),
        )

    async def ensure_quality_report(self, job: PipelineJob) -> QualityReport:
        _require_completed(job, "a quality report")
        existing = await self._store.get_quality_report(job.id)
        if existing is not None:
            return existing
        report, created = await self._store.save_quality_report(self._scorer.score(job))
        if not created:
            logger.debug("Job %s: quality report already existed", job.id)
        return report

    async def ensure_exports(self, job: PipelineJob, formats: Iterable[str]) -> List[ExportArtifact]:
        """Return an artifact per requested format, creating only missing ones."""
        requested = parse_formats(formats)
        _require_completed(job, "exports")

        upload = await self._store.directory.get_upload(job.upload_id)
        upload_filename = upload.filename if upload else "output"

        results = []
        for fmt in requested:
            existing = await self._store.get_export(job.id, fmt)
            if existing is not None:
                results.append(existing)
                continue

            filename = export_filename(upload_filename, fmt)
            payload = render_export(fmt, job, filename)
            storage_path = export_storage_path(job.id, fmt)
            self._artifacts.write(storage_path, payload)

            artifact, _ = await self._store.save_export(
                ExportArtifact(
                    job_id=job.id,
                    format=fmt,
                    filename=filename,
                    file_size=len(payload),
                    storage_path=storage_path,
                    download_url=export_download_url(job.id, fmt),
                )
            )
            results.append(artifact)
        return results

    async def export_payload(self, job: PipelineJob, artifact: ExportArtifact) -> bytes:
        """Stored archive bytes, re-rendered if the file is gone."""
        data = self._artifacts.read(artifact.storage_path)
        if data is None:
            logger.warning("Export %s missing from storage, re-rendering", artifact.storage_path)
            data = render_export(artifact.format, job, artifact.filename)
            self._artifacts.write(artifact.storage_path, data)
        return data
