"""HTTP tests for the scheduled jobs admin API."""

import httpx
import pytest
from fastapi import FastAPI

from app.modules.payment_gateway.sweeper import PAYMENT_CLEANUP_JOB
from app.modules.scheduler.manager import IntervalSchedule, JobScheduler
from app.modules.scheduler.router import router


@pytest.fixture
async def scheduler():
    scheduler = JobScheduler()
    yield scheduler
    await scheduler.stop_all()


@pytest.fixture
def app(scheduler, ledger_store):
    app = FastAPI()
    app.include_router(router)
    app.state.scheduler = scheduler
    app.state.ledger_scope = ledger_store.scope
    return app


def client_for(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestJobsRouter:
    @pytest.mark.asyncio
    async def test_list(self, app, scheduler):
        async def job():
            return 0

        scheduler.start("cleanup", IntervalSchedule(3600), job, description="hourly")

        async with client_for(app) as client:
            response = await client.get("/admin/jobs")

        assert response.status_code == 200
        assert response.json()["cleanup"]["schedule"] == "every 3600s"
        assert response.json()["cleanup"]["running"] is True

    @pytest.mark.asyncio
    async def test_run(self, app, scheduler):
        async def job():
            return 7

        scheduler.start("cleanup", IntervalSchedule(3600), job)

        async with client_for(app) as client:
            response = await client.post("/admin/jobs/cleanup/run")

        assert response.json() == {"name": "cleanup", "success": True, "message": "Result: 7"}

    @pytest.mark.asyncio
    async def test_run_failure_is_reported(self, app, scheduler):
        async def job():
            raise RuntimeError("database unavailable")

        scheduler.start("cleanup", IntervalSchedule(3600), job)

        async with client_for(app) as client:
            response = await client.post("/admin/jobs/cleanup/run")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "database unavailable" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_run_unknown(self, app):
        async with client_for(app) as client:
            response = await client.post("/admin/jobs/missing/run")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_reload_installs_sweep(self, app, monkeypatch):
        monkeypatch.setenv("SWEEP_ENABLED", "true")
        monkeypatch.setenv("SWEEP_RUNNER", "inprocess")
        monkeypatch.setenv("SWEEP_SCHEDULE", "*/10 * * * *")

        async with client_for(app) as client:
            response = await client.post("/admin/jobs/reload")

        assert response.status_code == 200
        assert response.json()[PAYMENT_CLEANUP_JOB]["schedule"] == "*/10 * * * *"

    @pytest.mark.asyncio
    async def test_reload_with_invalid_schedule(self, app, monkeypatch):
        monkeypatch.setenv("SWEEP_ENABLED", "true")
        monkeypatch.setenv("SWEEP_RUNNER", "inprocess")
        monkeypatch.setenv("SWEEP_SCHEDULE", "not a cron")

        async with client_for(app) as client:
            response = await client.post("/admin/jobs/reload")

        assert response.status_code == 400
