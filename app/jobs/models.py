"""Pipeline job data model: jobs, steps, quality reports, export artifacts."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExportFormat(str, Enum):
    COCO = "coco"
    YOLO = "yolo"
    JSONL = "jsonl"


# Fixed pipeline: (step_key, step_label). Position in this tuple is the step order.
PIPELINE_STEPS: Tuple[Tuple[str, str], ...] = (
    ("register", "Upload Registered"),
    ("schema", "Schema Detection"),
    ("glossary", "Glossary Application"),
    ("translate", "Translation"),
    ("deid", "De-identification"),
    ("qa", "Quality Assessment"),
    ("format", "Format Conversion"),
    ("report", "Report Generation"),
)

STEP_KEYS: Tuple[str, ...] = tuple(key for key, _ in PIPELINE_STEPS)

# Upload registration happens synchronously with job creation.
PRECOMPLETED_STEP = "register"


class JobSubmission(BaseModel):
    """A request to run the pipeline over one uploaded dataset."""
    project_id: str
    upload_id: str
    settings: Optional[Dict[str, Any]] = None
    compliance_checks: Optional[Dict[str, Any]] = None
    glossary_id: Optional[str] = None


class PipelineJob(BaseModel):
    """One pipeline run over one uploaded dataset."""
    id: str = Field(default_factory=_new_id)
    project_id: str
    upload_id: str
    glossary_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    settings: Dict[str, Any] = Field(default_factory=dict)
    compliance_checks: Dict[str, Any] = Field(default_factory=dict)
    started_by: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def public_dict(self) -> Dict[str, Any]:
        """Serialized job without the internal lease columns."""
        return self.model_dump(mode="json", exclude={"lease_holder", "lease_expires_at"})


class PipelineStep(BaseModel):
    """One named stage within a job's fixed pipeline."""
    id: str = Field(default_factory=_new_id)
    job_id: str
    step_key: str
    step_label: str
    position: int
    status: StepStatus = StepStatus.QUEUED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def build_steps(job_id: str, now: Optional[datetime] = None) -> List[PipelineStep]:
    """Create the full ordered step set for a new job."""
    now = now or utcnow()
    steps = []
    for position, (key, label) in enumerate(PIPELINE_STEPS):
        precompleted = key == PRECOMPLETED_STEP
        steps.append(
            PipelineStep(
                job_id=job_id,
                step_key=key,
                step_label=label,
                position=position,
                status=StepStatus.COMPLETED if precompleted else StepStatus.QUEUED,
                started_at=now if precompleted else None,
                completed_at=now if precompleted else None,
                created_at=now,
                updated_at=now,
            )
        )
    return steps


class HistogramBucket(BaseModel):
    bucket: str
    count: int


class QualityReport(BaseModel):
    """Synthesized quality assessment for a completed job."""
    id: str = Field(default_factory=_new_id)
    job_id: str
    overall_score: int = Field(ge=0, le=100)
    component_scores: Dict[str, int] = Field(default_factory=dict)
    pass_fail_stats: Dict[str, int] = Field(default_factory=dict)
    histogram_data: List[HistogramBucket] = Field(default_factory=list)
    report_data: Dict[str, Any] = Field(default_factory=dict)
    pdf_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExportArtifact(BaseModel):
    """Descriptor of one generated export file."""
    id: str = Field(default_factory=_new_id)
    job_id: str
    format: ExportFormat
    filename: str
    file_size: Optional[int] = None
    storage_path: str
    download_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Project(BaseModel):
    id: str
    team_id: str
    name: str
    description: Optional[str] = None


class Upload(BaseModel):
    id: str
    project_id: str
    filename: str
    file_size: Optional[int] = None


class Requester(BaseModel):
    """The authenticated caller of an operation."""
    user_id: str
    email: Optional[str] = None
