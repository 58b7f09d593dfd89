"""Tests for the in-process job scheduler.

Tests that:
- Cron expressions are validated up front
- A job name never has two live tasks
- A failing run is recorded and the schedule keeps going
"""

import asyncio
from datetime import datetime, timezone

import pytest

from app.modules.scheduler.manager import (
    CronSchedule,
    IntervalSchedule,
    JobAlreadyExists,
    JobNotFound,
    JobScheduler,
)


async def noop():
    return "ok"


class TestSchedules:
    @pytest.mark.parametrize("expression", ["0 * * * *", "*/5 * * * *", "30 2 * * 1-5", "0 0 1 */3 *"])
    def test_valid_cron(self, expression):
        assert str(CronSchedule.parse(expression)) == expression

    def test_whitespace_is_normalized(self):
        assert CronSchedule.parse("  0   *  * * * ").expression == "0 * * * *"

    @pytest.mark.parametrize(
        "expression",
        ["", "* * * *", "* * * * * *", "61 * * * *", "* 25 * * *", "hourly please * * *"],
    )
    def test_invalid_cron(self, expression):
        with pytest.raises(ValueError):
            CronSchedule.parse(expression)

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("* * * * *", 30),
            ("0 * * * *", 3570),
            ("*/5 * * * *", 270),
            ("0 3 * * *", 53970),
        ],
    )
    def test_cron_next_delay_follows_given_clock(self, expression, expected):
        now = datetime(2026, 1, 15, 12, 0, 30, tzinfo=timezone.utc)

        assert CronSchedule.parse(expression).next_delay(now) == expected

    def test_interval(self):
        schedule = IntervalSchedule(90)

        assert schedule.next_delay(datetime.now(timezone.utc)) == 90
        assert str(schedule) == "every 90s"

    @pytest.mark.parametrize("seconds", [0, -5])
    def test_interval_must_be_positive(self, seconds):
        with pytest.raises(ValueError):
            IntervalSchedule(seconds)


class TestJobScheduler:
    @pytest.mark.asyncio
    async def test_start_and_status(self):
        scheduler = JobScheduler()
        try:
            scheduler.start("cleanup", CronSchedule.parse("0 * * * *"), noop, description="hourly")

            status = scheduler.status()["cleanup"]
            assert status["schedule"] == "0 * * * *"
            assert status["running"] is True
            assert status["last_run"] is None
            assert status["description"] == "hourly"
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_duplicate_start_is_rejected(self):
        scheduler = JobScheduler()
        try:
            scheduler.start("cleanup", IntervalSchedule(60), noop)

            with pytest.raises(JobAlreadyExists):
                scheduler.start("cleanup", IntervalSchedule(60), noop)
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_replace_cancels_previous_task(self):
        scheduler = JobScheduler()
        try:
            old = scheduler.start("cleanup", IntervalSchedule(60), noop)

            new = await scheduler.replace("cleanup", IntervalSchedule(30), noop)

            assert old.task.cancelled()
            assert new.running
            assert scheduler.get("cleanup") is new
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_concurrent_replace_leaves_one_task(self):
        scheduler = JobScheduler()
        try:
            jobs = await asyncio.gather(*(
                scheduler.replace("cleanup", IntervalSchedule(60), noop) for _ in range(5)
            ))

            live = [job for job in jobs if job.running]
            assert len(live) == 1
            assert scheduler.get("cleanup") is live[0]
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_failing_run_does_not_stop_schedule(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")

        scheduler = JobScheduler()
        try:
            job = scheduler.start("flaky", IntervalSchedule(0.01), flaky)
            for _ in range(100):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)

            assert len(calls) >= 3
            assert job.running
            assert job.last_error is None
            assert job.last_run is not None
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_failing_run_records_error(self):
        async def broken():
            raise RuntimeError("boom")

        scheduler = JobScheduler()
        try:
            job = scheduler.start("broken", IntervalSchedule(0.01), broken)
            for _ in range(100):
                if job.last_error:
                    break
                await asyncio.sleep(0.01)

            assert job.last_error == "boom"
            assert job.running
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_run_now(self):
        scheduler = JobScheduler()
        try:
            scheduler.start("cleanup", IntervalSchedule(3600), noop)

            assert await scheduler.run_now("cleanup") == "ok"
            assert scheduler.status()["cleanup"]["last_run"] is not None
        finally:
            await scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_run_now_unknown_job(self):
        with pytest.raises(JobNotFound):
            await JobScheduler().run_now("missing")

    @pytest.mark.asyncio
    async def test_stop(self):
        scheduler = JobScheduler()
        job = scheduler.start("cleanup", IntervalSchedule(60), noop)

        assert await scheduler.stop("cleanup") is True
        assert await scheduler.stop("cleanup") is False
        assert job.task.done()
        assert "cleanup" not in scheduler

    @pytest.mark.asyncio
    async def test_stop_all(self):
        scheduler = JobScheduler()
        jobs = [scheduler.start(name, IntervalSchedule(60), noop) for name in ("a", "b", "c")]

        await scheduler.stop_all()

        assert scheduler.status() == {}
        assert all(job.task.done() for job in jobs)
