"""Common pytest configuration."""

import random
from typing import Optional

import pytest
from fastapi import Header
from httpx import ASGITransport, AsyncClient

from app.auth.supabase_auth import verify_jwt
from app.config import Settings
from app.jobs.directory import InMemoryProjectDirectory
from app.jobs.memory_store import InMemoryJobStore
from app.jobs.models import JobSubmission, PipelineJob, Project, Requester, Upload
from app.main import build_service, create_app
from app.pipeline.artifacts import SimulatedQualityScorer, TerminalArtifactProducer
from app.pipeline.executors import ExecutorRegistry
from app.pipeline.sequencer import StepSequencer
from app.storage.artifact_store import ArtifactStore

from tests.support import MEMBER, OTHER_PROJECT_ID, OUTSIDER, PROJECT_ID, UPLOAD_ID


@pytest.fixture
def anyio_backend() -> str:
    """Force asyncio backend for anyio-powered tests.

    Returns:
        str: The backend name.
    """
    return "asyncio"


@pytest.fixture
def requester() -> Requester:
    return Requester(user_id=MEMBER, email="member@example.com")


@pytest.fixture
def outsider() -> Requester:
    return Requester(user_id=OUTSIDER)


@pytest.fixture
def directory() -> InMemoryProjectDirectory:
    directory = InMemoryProjectDirectory()
    directory.add_project(Project(id=PROJECT_ID, team_id="team-cardio", name="Cardiology Notes"))
    directory.add_project(Project(id=OTHER_PROJECT_ID, team_id="team-other", name="Other Team"))
    directory.add_upload(Upload(id=UPLOAD_ID, project_id=PROJECT_ID, filename="discharge_notes.csv"))
    directory.add_upload(Upload(id="upload-other", project_id=OTHER_PROJECT_ID, filename="x.csv"))
    directory.add_member("team-cardio", MEMBER)
    directory.add_member("team-other", OUTSIDER)
    return directory


@pytest.fixture
def store(directory: InMemoryProjectDirectory) -> InMemoryJobStore:
    return InMemoryJobStore(directory)


@pytest.fixture
def artifacts(tmp_path) -> ArtifactStore:
    return ArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def executors() -> ExecutorRegistry:
    return ExecutorRegistry.simulated((0.0, 0.0), random.Random(7))


@pytest.fixture
def producer(store: InMemoryJobStore, artifacts: ArtifactStore) -> TerminalArtifactProducer:
    return TerminalArtifactProducer(store, artifacts, scorer=SimulatedQualityScorer(random.Random(7)))


@pytest.fixture
def sequencer(store, executors, producer) -> StepSequencer:
    return StepSequencer(store, executors, producer=producer, lease_ttl_seconds=5, heartbeat_seconds=1)


@pytest.fixture
def submission() -> JobSubmission:
    return JobSubmission(
        project_id=PROJECT_ID,
        upload_id=UPLOAD_ID,
        settings={"glossaryEnabled": True, "deidLevel": "strict", "targetLanguage": "en"},
        compliance_checks={"hipaa": True},
    )


@pytest.fixture
async def queued_job(store, submission, requester) -> PipelineJob:
    return await store.submit_job(submission, requester)


@pytest.fixture
def service(store, executors, artifacts):
    config = Settings(
        lease_ttl_seconds=5,
        lease_heartbeat_seconds=1,
        poll_interval_ms=500,
    )
    return build_service(
        config,
        store=store,
        executors=executors,
        scorer=SimulatedQualityScorer(random.Random(7)),
        artifacts=artifacts,
    )


async def _header_requester(x_test_user: Optional[str] = Header(MEMBER)) -> Requester:
    return Requester(user_id=x_test_user)


@pytest.fixture
async def client(service):
    """HTTP client for the app; the X-Test-User header picks the requester."""
    app = create_app(service)
    app.dependency_overrides[verify_jwt] = _header_requester
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    await service.dispatcher.stop()
