"""Export archive rendering for COCO, YOLO and JSONL.

The archive contents are placeholders in the right shape for each format;
they are not derived from the uploaded data. Rendering is deterministic for
a given job, so a re-rendered archive matches the recorded file size.
"""

import io
import json
import os
import zipfile
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Tuple

from app.errors import ValidationError
from app.jobs.models import ExportFormat, PipelineJob


def parse_formats(formats: Iterable[str]) -> List[ExportFormat]:
    """Validate requested formats, dropping duplicates but keeping order."""
    parsed: List[ExportFormat] = []
    for value in formats:
        try:
            fmt = ExportFormat(str(value).lower())
        except ValueError:
            valid = [f.value for f in ExportFormat]
            raise ValidationError(f"Unknown export format '{value}'. Valid: {valid}")
        if fmt not in parsed:
            parsed.append(fmt)
    if not parsed:
        raise ValidationError("Formats array is required")
    return parsed


def export_filename(upload_filename: str, fmt: ExportFormat) -> str:
    stem = os.path.splitext(os.path.basename(upload_filename))[0] or "output"
    return f"{stem}_{fmt.value}.zip"


def export_storage_path(job_id: str, fmt: ExportFormat) -> str:
    return f"exports/{job_id}/{fmt.value}.zip"


def export_download_url(job_id: str, fmt: ExportFormat) -> str:
    return f"/api/v1/exports/{job_id}/{fmt.value}/download"


def _render_coco(job: PipelineJob, filename: str, stamp: datetime) -> str:
    created = stamp.isoformat()
    return json.dumps(
        {
            "info": {
                "description": f"GenMedic Studio COCO export - {filename}",
                "version": "1.0",
                "year": stamp.year,
                "contributor": "GenMedic Studio",
                "date_created": created,
                "job_id": job.id,
            },
            "licenses": [{"id": 1, "name": "Research Use Only", "url": ""}],
            "images": [
                {
                    "id": 1,
                    "width": 512,
                    "height": 512,
                    "file_name": "sample_001.jpg",
                    "license": 1,
                    "date_captured": created,
                }
            ],
            "annotations": [
                {
                    "id": 1,
                    "image_id": 1,
                    "category_id": 1,
                    "bbox": [100, 100, 200, 150],
                    "area": 30000,
                    "iscrowd": 0,
                }
            ],
            "categories": [
                {"id": 1, "name": "medical_condition", "supercategory": "medical"}
            ],
        },
        indent=2,
    )


def _render_yolo(job: PipelineJob, filename: str, stamp: datetime) -> str:
    return (
        "# GenMedic Studio YOLO Export\n"
        f"# Job: {job.id}\n"
        f"# Generated: {stamp.isoformat()}\n"
        "\n"
        "train: ./train/images\n"
        "val: ./val/images\n"
        "test: ./test/images\n"
        "\n"
        "names:\n"
        "  0: medical_condition\n"
        "  1: anatomy\n"
        "  2: procedure\n"
    )


def _render_jsonl(job: PipelineJob, filename: str, stamp: datetime) -> str:
    records = [
        {
            "id": "001",
            "text_ko": "복통과 구토로 내원한 35세 여성 환자",
            "text_en": "35-year-old female patient presenting with abdominal pain and vomiting",
            "image": "/processed/001.jpg",
            "label": "GI/abdomen",
            "confidence": 0.95,
        },
        {
            "id": "002",
            "text_ko": "흉통을 호소하는 45세 남성",
            "text_en": "45-year-old male complaining of chest pain",
            "image": "/processed/002.jpg",
            "label": "cardiology/chest",
            "confidence": 0.88,
        },
    ]
    processed_at = stamp.isoformat()
    return "\n".join(
        json.dumps({**r, "processed_at": processed_at}, ensure_ascii=False) for r in records
    ) + "\n"


_RENDERERS: Dict[ExportFormat, Tuple[str, Callable[[PipelineJob, str, datetime], str]]] = {
    ExportFormat.COCO: ("annotations.json", _render_coco),
    ExportFormat.YOLO: ("data.yaml", _render_yolo),
    ExportFormat.JSONL: ("records.jsonl", _render_jsonl),
}


def render_export(fmt: ExportFormat, job: PipelineJob, filename: str) -> bytes:
    """Build the zip archive for one export format."""
    member_name, render = _RENDERERS[fmt]
    stamp = job.completed_at or job.started_at
    content = render(job, filename, stamp)

    # Fixed member timestamp keeps the archive bytes stable across renders.
    zip_time = (max(stamp.year, 1980), stamp.month, stamp.day, stamp.hour, stamp.minute, stamp.second)
    info = zipfile.ZipInfo(member_name, date_time=zip_time)
    info.compress_type = zipfile.ZIP_DEFLATED

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(info, content.encode("utf-8"))
    return buf.getvalue()
