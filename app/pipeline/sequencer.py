"""Step sequencer: drives one job through its pipeline steps in order.

A sequencer only advances a job while it holds the job's execution lease.
Acquiring the lease is a compare-and-swap in the store, so at most one
sequencer advances a given job at any time; a second invocation for the
same job returns without touching it. A heartbeat renews the lease between
store writes. If the lease is lost, advancement stops at the next step
boundary and the new holder resumes from the first non-completed step.

Step failures are recorded on the step and job records. Nothing is raised
back to the caller: the sequencer runs detached from the request that
created the job.
"""

import asyncio
import logging
import socket
import uuid
from contextlib import suppress
from typing import NoReturn, Optional, Tuple

from app.errors import LeaseLost, PreconditionFailed
from app.jobs.models import JobStatus, PipelineJob, PipelineStep, StepStatus
from app.jobs.store import JobStore
from app.pipeline.artifacts import TerminalArtifactProducer
from app.pipeline.executors import ExecutorRegistry, StepContext

logger = logging.getLogger(__name__)


class _Stop(Exception):
    """Internal: advancement must stop with the given job status."""

    def __init__(self, status: Optional[JobStatus]):
        self.status = status


class StepSequencer:
    """Advances jobs step by step under a per-job execution lease."""

    def __init__(
        self,
        store: JobStore,
        executors: ExecutorRegistry,
        producer: Optional[TerminalArtifactProducer] = None,
        lease_ttl_seconds: float = 30,
        heartbeat_seconds: float = 10,
    ):
        if heartbeat_seconds >= lease_ttl_seconds:
            raise ValueError("Lease heartbeat must be shorter than the lease TTL")
        self._store = store
        self._executors = executors
        self._producer = producer
        self._lease_ttl = lease_ttl_seconds
        self._heartbeat = heartbeat_seconds
        self._host = socket.gethostname()

    def _new_holder(self) -> str:
        return f"{self._host}:{uuid.uuid4().hex[:12]}"

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """Drive a queued (or orphaned running) job to a terminal state.

        Returns the job status this run ended with, or None when another
        holder owns the job or it was already terminal.
        """
        holder = self._new_holder()
        job = await self._store.acquire_lease(job_id, holder, self._lease_ttl)
        if job is None:
            logger.info("Job %s: lease not acquired, another run owns it or it is done", job_id)
            return None
        logger.info("Job %s: lease acquired by %s", job_id, holder)
        return await self._drive(job, holder)

    async def retry(self, job_id: str) -> Optional[JobStatus]:
        """Restart a failed job from its first non-completed step."""
        claim = await self.reopen(job_id)
        if claim is None:
            return None
        return await self.resume(*claim)

    async def reopen(self, job_id: str) -> Optional[Tuple[PipelineJob, str]]:
        """Move a failed job back to running under a new lease.

        Returns the reopened job and the lease holder to pass to resume(),
        or None when the job is not failed.
        """
        holder = self._new_holder()
        job = await self._store.reopen_failed_job(job_id, holder, self._lease_ttl)
        if job is None:
            logger.info("Job %s: not failed, nothing to retry", job_id)
            return None
        logger.info("Job %s: reopened for retry by %s", job_id, holder)
        return job, holder

    async def resume(self, job: PipelineJob, holder: str) -> Optional[JobStatus]:
        """Advance a job whose lease ``holder`` already owns."""
        return await self._drive(job, holder)

    async def _drive(self, job: PipelineJob, holder: str) -> Optional[JobStatus]:
        lease_lost = asyncio.Event()
        heartbeat = asyncio.create_task(self._keep_lease(job.id, holder, lease_lost))
        try:
            status = await self._advance(job, holder, lease_lost)
        except Exception as e:
            logger.exception("Job %s: sequencer error", job.id)
            status = await self._abort(job.id, holder, f"Internal error: {type(e).__name__}")
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            await self._store.release_lease(job.id, holder)

        if status == JobStatus.COMPLETED and self._producer is not None:
            try:
                await self._producer.produce(job.id)
            except Exception:
                logger.exception("Job %s: terminal artifact production failed", job.id)
        return status

    async def _keep_lease(self, job_id: str, holder: str, lease_lost: asyncio.Event) -> None:
        """Renew the lease every heartbeat.

        Sets ``lease_lost`` when the store reports another holder, or when no
        renewal has succeeded for a full TTL (the lease may have lapsed).
        """
        loop = asyncio.get_running_loop()
        last_renewed = loop.time()
        while True:
            await asyncio.sleep(self._heartbeat)
            try:
                renewed = await self._store.renew_lease(job_id, holder, self._lease_ttl)
            except Exception:
                if loop.time() - last_renewed >= self._lease_ttl:
                    logger.warning(
                        "Job %s: no lease renewal for %ss, giving up", job_id, self._lease_ttl,
                        exc_info=True,
                    )
                    lease_lost.set()
                    return
                logger.warning("Job %s: lease renewal failed, retrying", job_id, exc_info=True)
                continue
            if not renewed:
                logger.warning("Job %s: lease lost by %s", job_id, holder)
                lease_lost.set()
                return
            last_renewed = loop.time()

    async def _advance(
        self, job: PipelineJob, holder: str, lease_lost: asyncio.Event
    ) -> Optional[JobStatus]:
        try:
            for step in await self._store.list_steps(job.id):
                if step.status == StepStatus.COMPLETED:
                    continue
                await self._check_boundary(job.id, holder, lease_lost)
                await self._run_step(job, step, holder, lease_lost)

            await self._check_boundary(job.id, holder, lease_lost)
            try:
                await self._store.finalize_job(job.id, JobStatus.COMPLETED, holder=holder)
            except PreconditionFailed:
                current = await self._store.require_job(job.id)
                logger.info("Job %s: ended as %s before finalization", job.id, current.status.value)
                return current.status
        except _Stop as stop:
            return stop.status
        except LeaseLost:
            logger.warning("Job %s: lease taken over by another holder, stopping", job.id)
            return None
        logger.info("Job %s: completed", job.id)
        return JobStatus.COMPLETED

    async def _abort(self, job_id: str, holder: str, error: str) -> Optional[JobStatus]:
        """Fail a job after an unexpected sequencer error, unless it is already terminal.

        The in-flight step is failed first so the job never reads as terminal
        with a step still running.
        """
        try:
            for step in await self._store.list_steps(job_id):
                if step.status == StepStatus.RUNNING:
                    await self._store.advance_step(
                        job_id, step.step_key, StepStatus.FAILED, error_message=error, holder=holder
                    )
        except Exception:
            logger.exception("Job %s: could not fail the in-flight step", job_id)
        try:
            job = await self._store.finalize_job(
                job_id, JobStatus.FAILED, error_message=error, holder=holder
            )
        except Exception:
            logger.exception("Job %s: could not record sequencer failure", job_id)
            return None
        return job.status

    async def _check_boundary(self, job_id: str, holder: str, lease_lost: asyncio.Event) -> None:
        if lease_lost.is_set():
            raise _Stop(None)
        current = await self._store.require_job(job_id)
        if current.lease_holder != holder:
            logger.warning("Job %s: lease now held by %s, stopping", job_id, current.lease_holder)
            raise _Stop(None)
        if current.status == JobStatus.CANCELLED:
            logger.info("Job %s: cancelled, stopping", job_id)
            raise _Stop(JobStatus.CANCELLED)

    async def _run_step(
        self, job: PipelineJob, step: PipelineStep, holder: str, lease_lost: asyncio.Event
    ) -> None:
        key = step.step_key
        try:
            running = await self._store.advance_step(job.id, key, StepStatus.RUNNING, holder=holder)
        except PreconditionFailed:
            # Cancelled between the boundary check and the transition.
            await self._check_boundary(job.id, holder, lease_lost)
            raise
        logger.info("Job %s: step '%s' running", job.id, key)

        try:
            outcome = await self._executors.get(key).execute(StepContext(job=job, step=running))
        except Exception as e:
            logger.exception("Job %s: step '%s' failed", job.id, key)
            await self._fail(job.id, key, holder, f"{type(e).__name__}: {e}", lease_lost)

        try:
            await self._check_boundary(job.id, holder, lease_lost)
        except _Stop as stop:
            if stop.status == JobStatus.CANCELLED:
                await self._store.advance_step(
                    job.id, key, StepStatus.CANCELLED, logs="Cancelled before completion.",
                    holder=holder,
                )
            raise

        try:
            await self._store.advance_step(
                job.id, key, StepStatus.COMPLETED, logs=outcome.logs, holder=holder
            )
        except PreconditionFailed:
            await self._store.advance_step(
                job.id, key, StepStatus.CANCELLED, logs="Cancelled before completion.",
                holder=holder,
            )
            raise _Stop(JobStatus.CANCELLED)
        logger.info("Job %s: step '%s' completed", job.id, key)

    async def _fail(
        self, job_id: str, step_key: str, holder: str, error: str, lease_lost: asyncio.Event
    ) -> NoReturn:
        if lease_lost.is_set():
            raise _Stop(None)
        await self._store.advance_step(
            job_id, step_key, StepStatus.FAILED, error_message=error, holder=holder
        )
        try:
            await self._store.finalize_job(
                job_id, JobStatus.FAILED, error_message=f"Step '{step_key}' failed: {error}",
                holder=holder,
            )
        except PreconditionFailed:
            # Cancelled while the step was running; the job is already terminal.
            current = await self._store.require_job(job_id)
            raise _Stop(current.status)
        raise _Stop(JobStatus.FAILED)
