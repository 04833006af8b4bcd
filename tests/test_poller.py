"""Client status poller."""

import asyncio

import httpx
import pytest

from app.client.poller import JobStatusPoller, http_status_fetcher, is_terminal


def _snapshot(status: str) -> dict:
    return {"job": {"id": "job-1", "status": status}, "steps": []}


class ScriptedFetcher:
    """Returns (or raises) the scripted responses in order, then repeats the last one."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, job_id: str) -> dict:
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return response


@pytest.mark.anyio
async def test_poll_stops_on_terminal_status():
    fetch = ScriptedFetcher(_snapshot("queued"), _snapshot("running"), _snapshot("completed"))
    updates = []
    poller = JobStatusPoller(fetch, interval_ms=1, on_update=updates.append)

    final = await asyncio.wait_for(poller.poll("job-1"), timeout=5)

    assert final["job"]["status"] == "completed"
    assert fetch.calls == 3
    assert [u["job"]["status"] for u in updates] == ["queued", "running", "completed"]


@pytest.mark.anyio
async def test_poll_survives_transient_failures():
    fetch = ScriptedFetcher(
        _snapshot("running"),
        httpx.ConnectError("connection refused"),
        _snapshot("failed"),
    )
    poller = JobStatusPoller(fetch, interval_ms=1)

    final = await asyncio.wait_for(poller.poll("job-1"), timeout=5)

    assert final["job"]["status"] == "failed"
    assert poller.failures == 1
    assert poller.last_snapshot == final


@pytest.mark.anyio
async def test_stop_cancels_background_poll():
    fetch = ScriptedFetcher(_snapshot("running"))
    poller = JobStatusPoller(fetch, interval_ms=1)

    task = poller.start("job-1")
    while fetch.calls < 2:
        await asyncio.sleep(0.001)
    await poller.stop()

    assert task.cancelled()
    assert poller.last_snapshot["job"]["status"] == "running"


@pytest.mark.anyio
async def test_http_fetcher_reads_status_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_snapshot("cancelled"))

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://pipeline"
    ) as http:
        fetch = http_status_fetcher(http, token="tok")
        snapshot = await fetch("job-9")

    assert is_terminal(snapshot)
    assert seen[0].url.path == "/api/v1/pipeline/job-9/status"
    assert seen[0].headers["Authorization"] == "Bearer tok"


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        JobStatusPoller(ScriptedFetcher(_snapshot("running")), interval_ms=0)
