"""Job dispatcher interface and in-process implementation.

Runs each job's sequencer as a detached asyncio task: the request that
submits a job returns as soon as the job exists, without waiting for any
step. Tasks are tracked so they can be awaited in tests and cancelled on
shutdown. On start, jobs left queued or orphaned by a previous process are
picked up again.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional

from app.jobs.models import JobStatus, PipelineJob
from app.jobs.store import JobStore
from app.pipeline.sequencer import StepSequencer

logger = logging.getLogger(__name__)


class JobDispatcher(ABC):
    """Abstract interface for starting sequencer runs."""

    @abstractmethod
    async def submit(self, job_id: str) -> None:
        """Start advancing a freshly created job in the background."""
        ...

    @abstractmethod
    async def retry(self, job_id: str) -> Optional[PipelineJob]:
        """Reopen a failed job and advance it in the background.

        Returns the reopened job, or None when the job is not failed.
        """
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher and recover unfinished jobs."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher, cancelling in-flight runs."""
        ...


class InProcessDispatcher(JobDispatcher):
    """Runs sequencers as asyncio tasks in this process.

    A semaphore caps how many jobs advance at once; jobs beyond the cap wait
    in ``queued`` until a slot frees up.
    """

    def __init__(self, store: JobStore, sequencer: StepSequencer, max_concurrent: int = 8):
        self._store = store
        self._sequencer = sequencer
        self._slots = asyncio.Semaphore(max_concurrent)
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def submit(self, job_id: str) -> None:
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            # The lease would turn a second run into a no-op anyway.
            logger.debug("Job %s: run already in flight", job_id)
            return
        self._spawn(job_id, lambda: self._sequencer.run(job_id))

    async def retry(self, job_id: str) -> Optional[PipelineJob]:
        claim = await self._sequencer.reopen(job_id)
        if claim is None:
            return None
        job, holder = claim
        self._spawn(job_id, lambda: self._sequencer.resume(job, holder))
        return job

    async def start(self) -> None:
        recoverable = await self._store.list_recoverable_jobs()
        for job_id in recoverable:
            await self.submit(job_id)
        if recoverable:
            logger.info("Recovered %d unfinished job(s)", len(recoverable))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def join(self, job_id: str) -> Optional[JobStatus]:
        """Wait for the background run of a job, if one is in flight."""
        task = self._tasks.get(job_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    def _spawn(self, job_id: str, run: Callable[[], Awaitable[Optional[JobStatus]]]) -> None:
        task = asyncio.create_task(self._guarded(job_id, run), name=f"sequencer-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, key=job_id: self._forget(key, t))

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _guarded(
        self, job_id: str, run: Callable[[], Awaitable[Optional[JobStatus]]]
    ) -> Optional[JobStatus]:
        async with self._slots:
            try:
                return await run()
            except asyncio.CancelledError:
                logger.info("Job %s: sequencer task cancelled", job_id)
                raise
            except Exception:
                logger.exception("Job %s: sequencer crashed", job_id)
                return None
