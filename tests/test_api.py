"""HTTP API, end to end over the in-memory backend."""

import asyncio
import io
import zipfile

import pytest
from httpx import ASGITransport, AsyncClient

from app.client.poller import JobStatusPoller, http_status_fetcher
from app.main import create_app
from app.pipeline.executors import SimulatedStepExecutor

from tests.support import OUTSIDER, PROJECT_ID, UPLOAD_ID, FailingExecutor, GatedExecutor

START_BODY = {
    "projectId": PROJECT_ID,
    "uploadId": UPLOAD_ID,
    "settings": {"glossaryEnabled": False, "deidLevel": "standard"},
    "complianceChecks": {"hipaa": True, "gdpr": False},
}
AS_OUTSIDER = {"X-Test-User": OUTSIDER}


async def _start(client) -> str:
    response = await client.post("/api/v1/pipeline/start", json=START_BODY)
    assert response.status_code == 200, response.text
    return response.json()["job"]["id"]


@pytest.mark.anyio
async def test_start_returns_queued_job_with_steps(client, service):
    response = await client.post("/api/v1/pipeline/start", json=START_BODY)

    assert response.status_code == 200
    body = response.json()
    assert body["job"]["status"] == "queued"
    assert body["job"]["project_id"] == PROJECT_ID
    assert "lease_holder" not in body["job"]
    assert len(body["steps"]) == 8
    assert body["steps"][0]["status"] == "completed"
    assert body["progress"] == {"completed": 1, "total": 8}
    assert body["poll"] == {"interval_ms": 500, "stop_on_terminal": True}
    await service.dispatcher.join(body["job"]["id"])


@pytest.mark.anyio
async def test_job_runs_to_completion(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    response = await client.get(f"/api/v1/pipeline/{job_id}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["job"]["status"] == "completed"
    assert body["progress"] == {"completed": 8, "total": 8}
    assert [s["step_key"] for s in body["steps"]] == [
        "register", "schema", "glossary", "translate", "deid", "qa", "format", "report",
    ]
    glossary = next(s for s in body["steps"] if s["step_key"] == "glossary")
    assert "skipped" in glossary["logs"]


@pytest.mark.anyio
async def test_missing_fields_are_rejected(client):
    response = await client.post("/api/v1/pipeline/start", json={"projectId": PROJECT_ID})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_error"
    assert "uploadId" in body["detail"]


@pytest.mark.anyio
async def test_malformed_body_is_a_validation_error(client):
    response = await client.post(
        "/api/v1/pipeline/start", json={**START_BODY, "settings": "not-an-object"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.anyio
async def test_outsiders_cannot_see_or_start_jobs(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    hidden = await client.get(f"/api/v1/pipeline/{job_id}/status", headers=AS_OUTSIDER)
    missing = await client.get("/api/v1/pipeline/does-not-exist/status", headers=AS_OUTSIDER)
    assert hidden.status_code == missing.status_code == 404
    assert hidden.json() == missing.json()

    started = await client.post("/api/v1/pipeline/start", json=START_BODY, headers=AS_OUTSIDER)
    assert started.status_code == 404

    for path in (
        f"/api/v1/exports/{job_id}/status",
        f"/api/v1/exports/{job_id}/coco/download",
        f"/api/v1/reports/{job_id}",
        f"/api/v1/projects/{PROJECT_ID}/jobs",
    ):
        assert (await client.get(path, headers=AS_OUTSIDER)).status_code == 404, path


@pytest.mark.anyio
async def test_project_jobs_listing(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    response = await client.get(f"/api/v1/projects/{PROJECT_ID}/jobs")

    assert response.status_code == 200
    assert [j["id"] for j in response.json()["jobs"]] == [job_id]


@pytest.mark.anyio
async def test_exports_generate_and_download(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    generated = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["coco"]})
    again = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["coco"]})
    assert generated.status_code == 200
    (coco,) = generated.json()["exports"]
    assert again.json()["exports"][0]["id"] == coco["id"]

    listed = await client.get(f"/api/v1/exports/{job_id}/status")
    assert sorted(e["format"] for e in listed.json()["exports"]) == ["coco", "jsonl", "yolo"]

    download = await client.get(coco["download_url"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    assert coco["filename"] in download.headers["content-disposition"]
    assert len(download.content) == coco["file_size"]
    with zipfile.ZipFile(io.BytesIO(download.content)) as zf:
        assert zf.namelist() == ["annotations.json"]

    unknown = await client.get(f"/api/v1/exports/{job_id}/parquet/download")
    assert unknown.status_code == 404


@pytest.mark.anyio
async def test_export_request_validation(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    empty = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": []})
    unknown = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["csv"]})
    assert empty.status_code == unknown.status_code == 400


@pytest.mark.anyio
async def test_artifacts_before_completion_are_refused(client, service, executors):
    gate = GatedExecutor("schema")
    executors.register(gate)
    job_id = await _start(client)
    await gate.started.wait()

    exports = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["yolo"]})
    report = await client.get(f"/api/v1/reports/{job_id}")
    assert exports.status_code == 400
    assert exports.json()["error"] == "precondition_failed"
    assert report.status_code == 404

    gate.release.set()
    await service.dispatcher.join(job_id)


@pytest.mark.anyio
async def test_quality_report_generate_and_download(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    report = await client.get(f"/api/v1/reports/{job_id}")
    assert report.status_code == 200
    assert report.json()["report"]["pdf_url"] is None

    generated = await client.post(f"/api/v1/reports/{job_id}/generate")
    assert generated.status_code == 200
    download_url = generated.json()["downloadUrl"]
    assert download_url == f"/api/v1/reports/{job_id}/download"

    pdf = await client.get(download_url)
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")

    report = await client.get(f"/api/v1/reports/{job_id}")
    assert report.json()["report"]["pdf_url"] == download_url


@pytest.mark.anyio
async def test_cancel_running_job(client, service, executors):
    gate = GatedExecutor("translate")
    executors.register(gate)
    job_id = await _start(client)
    await gate.started.wait()

    cancelled = await client.post(f"/api/v1/pipeline/{job_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["job"]["status"] == "cancelled"

    gate.release.set()
    await service.dispatcher.join(job_id)
    status = (await client.get(f"/api/v1/pipeline/{job_id}/status")).json()
    assert status["job"]["status"] == "cancelled"
    steps = {s["step_key"]: s["status"] for s in status["steps"]}
    assert steps["translate"] == "cancelled"
    assert steps["deid"] == "queued"

    again = await client.post(f"/api/v1/pipeline/{job_id}/cancel")
    assert again.status_code == 200
    retry = await client.post(f"/api/v1/pipeline/{job_id}/retry")
    assert retry.status_code == 409


@pytest.mark.anyio
async def test_retry_failed_job(client, service, executors):
    executors.register(FailingExecutor("deid", "PHI detector timed out"))
    job_id = await _start(client)
    await service.dispatcher.join(job_id)
    failed = (await client.get(f"/api/v1/pipeline/{job_id}/status")).json()
    assert failed["job"]["status"] == "failed"
    assert "PHI detector timed out" in failed["job"]["error_message"]

    executors.register(SimulatedStepExecutor("deid", (0.0, 0.0)))
    retried = await client.post(f"/api/v1/pipeline/{job_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["job"]["status"] == "running"

    await service.dispatcher.join(job_id)
    status = (await client.get(f"/api/v1/pipeline/{job_id}/status")).json()
    assert status["job"]["status"] == "completed"
    assert status["job"]["error_message"] is None


@pytest.mark.anyio
async def test_completed_job_cannot_be_cancelled(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    response = await client.post(f"/api/v1/pipeline/{job_id}/cancel")
    assert response.status_code == 409


@pytest.mark.anyio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["active_jobs"] == 0
    assert body["job_store"] == "InMemoryJobStore"


@pytest.mark.anyio
async def test_requests_without_token_are_unauthorized(service):
    app = create_app(service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        response = await http.get("/api/v1/pipeline/some-job/status")
    assert response.status_code == 401


@pytest.mark.anyio
async def test_full_pipeline_scenario(client, service):
    body = {
        "projectId": PROJECT_ID,
        "uploadId": UPLOAD_ID,
        "settings": {"glossaryEnabled": True, "deidLevel": 70},
        "complianceChecks": {"agreePolicy": True, "agreePHI": True, "agreeDPA": True},
    }
    started = await client.post("/api/v1/pipeline/start", json=body)
    assert started.status_code == 200
    job_id = started.json()["job"]["id"]

    seen = []
    poller = JobStatusPoller(http_status_fetcher(client), interval_ms=5, on_update=seen.append)
    final = await asyncio.wait_for(poller.poll(job_id), timeout=10)
    await service.dispatcher.join(job_id)

    assert final["job"]["status"] == "completed"
    assert final["job"]["compliance_checks"] == body["complianceChecks"]
    assert all(s["status"] == "completed" and s["logs"] for s in final["steps"])
    steps = {s["step_key"]: s for s in final["steps"]}
    assert "70" in steps["deid"]["logs"]
    assert "project default" in steps["glossary"]["logs"]
    statuses = [snapshot["job"]["status"] for snapshot in seen]
    assert statuses[-1] == "completed"
    assert statuses.count("completed") == 1

    generated = await client.post(
        f"/api/v1/exports/{job_id}/generate", json={"formats": ["coco", "yolo", "jsonl"]}
    )
    assert generated.status_code == 200
    exports = generated.json()["exports"]
    assert [e["format"] for e in exports] == ["coco", "yolo", "jsonl"]
    assert len({e["filename"] for e in exports}) == 3

    for export in exports:
        download = await client.get(export["download_url"])
        assert download.status_code == 200, export["format"]
        assert download.headers["content-type"] == "application/zip"
        assert f'filename="{export["filename"]}"' in download.headers["content-disposition"]
        assert len(download.content) == export["file_size"]

    report = await client.get(f"/api/v1/reports/{job_id}")
    assert report.status_code == 200
    assert 0 <= report.json()["report"]["overall_score"] <= 100


@pytest.mark.anyio
async def test_repeated_export_generation_does_not_duplicate(client, service):
    job_id = await _start(client)
    await service.dispatcher.join(job_id)

    first = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["coco", "jsonl"]})
    second = await client.post(f"/api/v1/exports/{job_id}/generate", json={"formats": ["coco", "jsonl"]})

    assert len(first.json()["exports"]) == len(second.json()["exports"]) == 2
    assert [e["id"] for e in first.json()["exports"]] == [e["id"] for e in second.json()["exports"]]
    listed = await client.get(f"/api/v1/exports/{job_id}/status")
    formats = [e["format"] for e in listed.json()["exports"]]
    assert sorted(formats) == sorted(set(formats))
