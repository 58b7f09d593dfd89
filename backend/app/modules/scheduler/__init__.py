"""Scheduler module for periodic in-process jobs."""

from app.modules.scheduler.manager import (
    CronSchedule,
    IntervalSchedule,
    JobAlreadyExists,
    JobNotFound,
    JobScheduler,
    ScheduledJob,
)
from app.modules.scheduler.router import router as scheduler_router

__all__ = [
    "CronSchedule",
    "IntervalSchedule",
    "JobAlreadyExists",
    "JobNotFound",
    "JobScheduler",
    "ScheduledJob",
    "scheduler_router",
]
