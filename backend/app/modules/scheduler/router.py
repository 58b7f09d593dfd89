"""Admin API for scheduled jobs."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.core.config import Settings
from app.core.logging import log_error, log_info
from app.modules.scheduler.manager import JobNotFound, JobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/jobs", tags=["jobs"])


class JobStatus(BaseModel):
    schedule: str
    running: bool
    last_run: Optional[str] = None
    last_error: Optional[str] = None
    description: str = ""


class JobRunResponse(BaseModel):
    name: str
    success: bool
    message: str


def get_scheduler(request: Request) -> JobScheduler:
    """Dependency to get the application's JobScheduler."""
    return request.app.state.scheduler


@router.get("", response_model=dict[str, JobStatus])
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    """Status of every scheduled job."""
    return scheduler.status()


@router.post("/{name}/run", response_model=JobRunResponse)
async def run_job(name: str, scheduler: JobScheduler = Depends(get_scheduler)):
    """Run a job now, outside its schedule."""
    try:
        result = await scheduler.run_now(name)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        log_error(logger, "Manual job run failed", e, job=name)
        return JobRunResponse(name=name, success=False, message=f"Error: {e}")

    log_info(logger, "Manual job run finished", job=name, result=result)
    return JobRunResponse(name=name, success=True, message=f"Result: {result}")


@router.post("/reload", response_model=dict[str, JobStatus])
async def reload_jobs(request: Request, scheduler: JobScheduler = Depends(get_scheduler)):
    """Re-read configuration and reinstall jobs."""
    from app.modules.payment_gateway.sweeper import configure_sweeper

    try:
        await configure_sweeper(scheduler, Settings(), request.app.state.ledger_scope)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return scheduler.status()
