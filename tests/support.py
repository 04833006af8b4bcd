"""Shared test data, step executors and store doubles."""

import asyncio
from typing import Optional

from app.errors import InternalError
from app.jobs.memory_store import InMemoryJobStore
from app.jobs.models import StepStatus
from app.pipeline.executors import StepContext, StepExecutionError, StepExecutor, StepOutcome

MEMBER = "user-member"
OUTSIDER = "user-outsider"
PROJECT_ID = "project-cardio"
OTHER_PROJECT_ID = "project-other"
UPLOAD_ID = "upload-notes"


class FailingExecutor(StepExecutor):
    """Fails its step with a fixed message."""

    def __init__(self, step_key: str, message: str = "model unavailable"):
        self.step_key = step_key
        self.message = message
        self.calls = 0

    async def execute(self, ctx: StepContext) -> StepOutcome:
        self.calls += 1
        raise StepExecutionError(self.message)


class GatedExecutor(StepExecutor):
    """Blocks inside its step until released, so tests can act mid-step."""

    def __init__(self, step_key: str, error: Optional[Exception] = None):
        self.step_key = step_key
        self.error = error
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, ctx: StepContext) -> StepOutcome:
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return StepOutcome(logs=f"Step {self.step_key} released.")


async def hand_over_lease(store: InMemoryJobStore, job_id: str, new_holder: str) -> str:
    """Let ``new_holder`` take the job over as if the current lease had lapsed.

    Returns the holder that lost the lease.
    """
    previous = (await store.load_job(job_id)).lease_holder
    await store.release_lease(job_id, previous)
    assert await store.acquire_lease(job_id, new_holder, 60) is not None
    return previous


class UnreliableStore(InMemoryJobStore):
    """In-memory store whose chosen operations raise like a failing database."""

    def __init__(self, directory, fail_step_completion: Optional[str] = None, fail_renewals: bool = False):
        super().__init__(directory)
        self.fail_step_completion = fail_step_completion
        self.fail_renewals = fail_renewals

    async def advance_step(self, job_id, step_key, new_status, logs=None, error_message=None, holder=None):
        if step_key == self.fail_step_completion and new_status == StepStatus.COMPLETED:
            raise InternalError("Job store request failed")
        return await super().advance_step(job_id, step_key, new_status, logs, error_message, holder)

    async def renew_lease(self, job_id, holder, ttl_seconds):
        if self.fail_renewals:
            raise ConnectionError("database unreachable")
        return await super().renew_lease(job_id, holder, ttl_seconds)
