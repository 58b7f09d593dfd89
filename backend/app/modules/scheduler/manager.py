"""In-process job scheduler.

A JobScheduler owns its jobs: one asyncio task per name, so replacing a
job always cancels the previous task before the new one starts and a name
can never have two live tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from celery.schedules import ParseException, crontab

from app.core.logging import correlation_scope, log_error, log_info

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class JobAlreadyExists(ValueError):
    """A job with this name is already scheduled."""


class JobNotFound(LookupError):
    """No job with this name is scheduled."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CronSchedule:
    """Standard five-field cron expression."""
    expression: str

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        """Validate and wrap a cron expression.

        Raises:
            ValueError: not a valid five-field expression
        """
        schedule = cls(" ".join(expression.split()))
        schedule.to_crontab()
        return schedule

    def to_crontab(self, nowfun: Optional[Callable[[], datetime]] = None) -> crontab:
        fields = self.expression.split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have 5 fields, got {len(fields)}: {self.expression!r}"
            )
        minute, hour, day_of_month, month_of_year, day_of_week = fields
        try:
            return crontab(
                minute=minute,
                hour=hour,
                day_of_month=day_of_month,
                month_of_year=month_of_year,
                day_of_week=day_of_week,
                nowfun=nowfun,
            )
        except (ParseException, ValueError) as e:
            raise ValueError(f"Invalid cron expression {self.expression!r}: {e}") from e

    def next_delay(self, now: datetime) -> float:
        """Seconds from now until the next matching minute."""
        remaining = self.to_crontab(nowfun=lambda: now).remaining_estimate(now)
        return max(remaining.total_seconds(), 0.0)

    def __str__(self) -> str:
        return self.expression


@dataclass(frozen=True)
class IntervalSchedule:
    """Fixed interval in seconds."""
    seconds: float

    def __post_init__(self):
        if self.seconds <= 0:
            raise ValueError("Interval must be positive")

    def next_delay(self, now: datetime) -> float:
        return self.seconds

    def __str__(self) -> str:
        return f"every {self.seconds:g}s"


Schedule = Union[CronSchedule, IntervalSchedule]


@dataclass
class ScheduledJob:
    name: str
    schedule: Schedule
    func: JobFunc
    description: str = ""
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class JobScheduler:
    """Name-keyed registry of periodic async jobs."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = asyncio.Lock()
        self.clock = clock

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def get(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    def start(
        self,
        name: str,
        schedule: Schedule,
        func: JobFunc,
        description: str = "",
    ) -> ScheduledJob:
        """Schedule a new job. Must be called from a running event loop.

        Raises:
            JobAlreadyExists: name is taken; use replace() instead
        """
        if name in self._jobs:
            raise JobAlreadyExists(f"Job already scheduled: {name}")
        job = ScheduledJob(name=name, schedule=schedule, func=func, description=description)
        job.task = asyncio.get_running_loop().create_task(
            self._run_loop(job), name=f"scheduler:{name}"
        )
        self._jobs[name] = job
        log_info(logger, "Scheduled job started", job=name, schedule=str(schedule))
        return job

    async def replace(
        self,
        name: str,
        schedule: Schedule,
        func: JobFunc,
        description: str = "",
    ) -> ScheduledJob:
        """Start a job, cancelling any previous job with the same name first."""
        async with self._lock:
            await self._cancel(name)
            return self.start(name, schedule, func, description)

    async def stop(self, name: str) -> bool:
        """Stop a job. Returns False if it was not scheduled."""
        async with self._lock:
            return await self._cancel(name)

    async def stop_all(self) -> None:
        async with self._lock:
            for name in list(self._jobs):
                await self._cancel(name)

    async def run_now(self, name: str) -> Any:
        """Run a job immediately, outside its schedule.

        Raises:
            JobNotFound: name is not scheduled
        """
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFound(f"Unknown job: {name}")
        job.last_run = self.clock()
        return await job.func()

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "schedule": str(job.schedule),
                "running": job.running,
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "last_error": job.last_error,
                "description": job.description,
            }
            for name, job in self._jobs.items()
        }

    async def _cancel(self, name: str) -> bool:
        job = self._jobs.pop(name, None)
        if job is None:
            return False
        if job.task is not None and not job.task.done():
            job.task.cancel()
            await asyncio.gather(job.task, return_exceptions=True)
        log_info(logger, "Scheduled job stopped", job=name)
        return True

    async def _run_loop(self, job: ScheduledJob) -> None:
        while True:
            await asyncio.sleep(job.schedule.next_delay(self.clock()))
            await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> None:
        job.last_run = self.clock()
        with correlation_scope(f"job-{job.name}-{job.last_run:%Y%m%dT%H%M%S}"):
            try:
                await job.func()
                job.last_error = None
            except Exception as e:
                # One bad run must not end the schedule
                job.last_error = str(e)
                log_error(logger, "Scheduled job failed", e, job=job.name)
