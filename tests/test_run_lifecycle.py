import asyncio

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tests.fakes import FakeProvider, answer, plan


async def wait_for_run(app, run_id: str, timeout: float = 5.0) -> None:
    task = app.state.coordinator.tasks.get(run_id)
    if task is not None:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)


@pytest.mark.asyncio
async def test_start_run_and_fetch_snapshot(app_factory):
    provider = FakeProvider(
        plans=[plan("search", query="revenue growth"), plan("inspect", node_id="n-rev"), plan("synthesize")],
        answers=[answer("Revenue growth was 15% year-over-year [n-rev].", ["n-rev"])],
    )
    app, _, _ = app_factory(provider=provider)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/run", json={"projectId": "p1", "query": "What was the revenue growth?"})
            assert res.status_code == 200
            body = res.json()
            assert body["status"] == "running"
            run_id = body["run_id"]
            await wait_for_run(app, run_id)

            res = await client.get(f"/api/run/{run_id}")
            assert res.status_code == 200
            snapshot = res.json()
            assert snapshot["run"]["status"] == "completed"
            assert snapshot["answer"]["grounded"] is True
            assert [step["step_kind"] for step in snapshot["steps"]] == ["search", "inspect", "synthesize"]

            res = await client.get(f"/api/run/{run_id}/events", params={"after_seq": 1})
            data = res.json()
            assert [ev["seq"] for ev in data["events"]] == [2, 3, 4]
            assert data["last_seq"] == 4

            res = await client.get("/api/runs", params={"project_id": "p1"})
            assert [item["id"] for item in res.json()["runs"]] == [run_id]


@pytest.mark.asyncio
async def test_start_run_accepts_snake_case_fields(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/api/run",
                json={"project_id": "p1", "query": "What was the revenue growth?", "max_steps": 3},
            )
            assert res.status_code == 200
            run_id = res.json()["run_id"]
            await wait_for_run(app, run_id)
            run = await app.state.db.get_run(run_id)
            assert run["max_steps"] == 3
            assert run["status"] in ("completed", "failed")


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(client):
    res = await client.post("/api/run", json={"projectId": "p1", "query": "   "})
    assert res.status_code == 400
    res = await client.post("/api/run", json={"projectId": "p1"})
    assert res.status_code == 422
    res = await client.get("/api/run/does-not-exist")
    assert res.status_code == 404
    res = await client.post("/api/run/does-not-exist/cancel")
    assert res.status_code == 404
    res = await client.get("/api/run/does-not-exist/events")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_cancel_endpoint_stops_run(app_factory):
    app, _, _ = app_factory(provider=FakeProvider(delay_seconds=1.0))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/run", json={"projectId": "p1", "query": "What was the revenue growth?"})
            run_id = res.json()["run_id"]
            stop_res = await client.post(f"/api/run/{run_id}/cancel")
            assert stop_res.status_code == 200
            assert stop_res.json()["status"] in ("cancelling", "failed")
            await wait_for_run(app, run_id)

            snapshot = (await client.get(f"/api/run/{run_id}")).json()
            assert snapshot["run"]["phase"] == "failed"
            assert snapshot["run"]["error"]["code"] == "cancelled"


@pytest.mark.asyncio
async def test_shutdown_fails_runs_still_in_flight(app_factory):
    app, provider, _ = app_factory(provider=FakeProvider(delay_seconds=5.0))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/run", json={"projectId": "p1", "query": "What was the revenue growth?"})
            run_id = res.json()["run_id"]
    run = await app.state.db.get_run(run_id)
    assert run["status"] == "failed"
    assert run["error"]["code"] == "cancelled"
    assert provider.closed is True
