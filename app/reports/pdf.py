"""Quality report rendering to a one-page PDF."""

import io
import json
from datetime import datetime
from typing import List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from app.jobs.models import PipelineJob, QualityReport

# A4 at 100 dpi
PAGE_SIZE = (827, 1169)
MARGIN = 60

COMPONENT_LABELS = (
    ("term_consistency", "Term Consistency"),
    ("glossary_adherence", "Glossary Adherence"),
    ("label_text_alignment", "Label-Text Alignment"),
    ("fluency", "Fluency"),
)


def report_filename(job_id: str) -> str:
    return f"quality-report-{job_id}.pdf"


def report_storage_path(job_id: str) -> str:
    return f"reports/{job_id}/quality-report.pdf"


def report_download_url(job_id: str) -> str:
    return f"/api/v1/reports/{job_id}/download"


def _score_color(score: float) -> Tuple[int, int, int]:
    if score >= 80:
        return (34, 139, 34)
    if score >= 60:
        return (230, 140, 0)
    return (200, 30, 30)


def _report_lines(
    job: PipelineJob, report: QualityReport, project_name: str, generated_at: datetime
) -> List[str]:
    stats = report.pass_fail_stats
    lines = [
        f"Project: {project_name}",
        f"Job ID: {job.id}",
        f"Generated: {generated_at.isoformat()}",
        "",
        "Component Scores:",
    ]
    for key, label in COMPONENT_LABELS:
        lines.append(f"  - {label}: {report.component_scores.get(key, 'n/a')}")
    lines += [
        "",
        "Pass/Fail Statistics:",
        f"  - Pass: {stats.get('pass', 0)}%",
        f"  - Warn: {stats.get('warn', 0)}%",
        f"  - Fail: {stats.get('fail', 0)}%",
        "",
        "Pipeline Details:",
        f"  - Hash: {report.report_data.get('pipeline_hash', 'n/a')}",
        "  - Models:",
    ]
    versions = report.report_data.get("model_versions", {})
    lines += [f"      {line}" for line in json.dumps(versions, indent=2).splitlines()]
    return lines


def render_quality_report_pdf(
    job: PipelineJob,
    report: QualityReport,
    project_name: str,
    generated_at: datetime,
) -> bytes:
    """Draw the report page and encode it as PDF bytes."""
    page = Image.new("RGB", PAGE_SIZE, (255, 255, 255))
    draw = ImageDraw.Draw(page)
    font_title = _get_font(30)
    font_score = _get_font(48)
    font_body = _get_font(16)

    y = MARGIN
    draw.text((MARGIN, y), "GenMedic Studio Quality Report", fill=(20, 20, 20), font=font_title)
    y += 50
    draw.line([(MARGIN, y), (PAGE_SIZE[0] - MARGIN, y)], fill=(180, 180, 180), width=2)
    y += 20

    draw.text(
        (MARGIN, y),
        f"{report.overall_score}/100",
        fill=_score_color(report.overall_score),
        font=font_score,
    )
    draw.text((MARGIN + 220, y + 20), "Overall Quality Score", fill=(80, 80, 80), font=font_body)
    y += 80

    for line in _report_lines(job, report, project_name, generated_at):
        draw.text((MARGIN, y), line, fill=(30, 30, 30), font=font_body)
        y += 24

    y = _draw_histogram(draw, report, y + 20, font_body)

    buf = io.BytesIO()
    page.save(buf, format="PDF", resolution=100.0)
    return buf.getvalue()


def _draw_histogram(draw: ImageDraw.ImageDraw, report: QualityReport, top: int, font) -> int:
    """Bar chart of the score histogram. Returns the y below the chart."""
    buckets = report.histogram_data
    if not buckets:
        return top
    draw.text((MARGIN, top), "Score Distribution:", fill=(30, 30, 30), font=font)
    top += 30
    chart_height = 160
    bar_width = 80
    gap = 30
    max_count = max(b.count for b in buckets) or 1
    baseline = top + chart_height
    for i, bucket in enumerate(buckets):
        x0 = MARGIN + i * (bar_width + gap)
        height = int(chart_height * bucket.count / max_count)
        draw.rectangle(
            [x0, baseline - height, x0 + bar_width, baseline],
            fill=(70, 130, 180),
        )
        draw.text((x0, baseline + 6), bucket.bucket, fill=(60, 60, 60), font=font)
        draw.text((x0, baseline - height - 22), str(bucket.count), fill=(60, 60, 60), font=font)
    return baseline + 40


def _get_font(size: int) -> Optional[ImageFont.FreeTypeFont]:
    """Try to load a TrueType font, falling back to Pillow's built-in font."""
    try:
        return ImageFont.truetype("arial.ttf", size)
    except OSError:
        try:
            return ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", size)
        except OSError:
            return ImageFont.load_default()
