"""Client-side status poller for pipeline jobs.

Fetches the job status on a fixed interval and hands every snapshot to a
callback until the job reaches a terminal status. A failed poll is treated
as transient: it is logged and retried on the next tick.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

StatusFetcher = Callable[[str], Awaitable[Dict[str, Any]]]
UpdateCallback = Callable[[Dict[str, Any]], None]


def is_terminal(snapshot: Dict[str, Any]) -> bool:
    return (snapshot.get("job") or {}).get("status") in TERMINAL_STATUSES


def http_status_fetcher(client: httpx.AsyncClient, token: Optional[str] = None) -> StatusFetcher:
    """Fetcher that reads ``GET /api/v1/pipeline/{job_id}/status``.

    ``client`` carries the service base URL and is owned by the caller:

        async with httpx.AsyncClient(base_url=url, timeout=10.0) as client:
            poller = JobStatusPoller(http_status_fetcher(client, token))
            await poller.poll(job_id)
    """
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def fetch(job_id: str) -> Dict[str, Any]:
        response = await client.get(f"/api/v1/pipeline/{job_id}/status", headers=headers)
        response.raise_for_status()
        return response.json()

    return fetch


class JobStatusPoller:
    """Polls one job's status until it is terminal or the poller is stopped."""

    def __init__(
        self,
        fetch: StatusFetcher,
        interval_ms: int = 2000,
        stop_on_terminal: bool = True,
        on_update: Optional[UpdateCallback] = None,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self._fetch = fetch
        self._interval = interval_ms / 1000
        self._stop_on_terminal = stop_on_terminal
        self._on_update = on_update
        self._task: Optional[asyncio.Task] = None
        self.last_snapshot: Optional[Dict[str, Any]] = None
        self.failures = 0

    async def poll(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Poll until the job is terminal. Returns the terminal snapshot."""
        while True:
            try:
                snapshot = await self._fetch(job_id)
            except Exception as e:
                self.failures += 1
                logger.warning("Polling job %s failed (%s), retrying", job_id, e)
            else:
                self.last_snapshot = snapshot
                if self._on_update is not None:
                    self._on_update(snapshot)
                if self._stop_on_terminal and is_terminal(snapshot):
                    return snapshot
            await asyncio.sleep(self._interval)

    def start(self, job_id: str) -> asyncio.Task:
        """Run poll() as a background task that stop() can cancel."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("Poller is already running")
        self._task = asyncio.create_task(self.poll(job_id), name=f"poller-{job_id}")
        return self._task

    async def stop(self) -> None:
        """Cancel a poll started with start(), e.g. when the view is torn down."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
