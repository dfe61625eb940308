"""
Background Job API Routes

Admin endpoints for the job queue plus the "run scheduler once" trigger that
an external cron hits.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.config import get_settings
from comms_scheduler.database import get_db, get_session_factory
from comms_scheduler.schemas.jobs import (
    JobCreate,
    JobError,
    JobStatus,
    JobUpdate,
    parse_parameters,
)
from comms_scheduler.services import job_manager
from comms_scheduler.services.job_runner import JobRunner
from comms_scheduler.utils.clock import to_naive_utc
from comms_scheduler.utils.logger import logger
from comms_scheduler.worker import build_runner, run_once

router = APIRouter()

# Rate limiter
from slowapi import Limiter
from slowapi.util import get_remote_address
limiter = Limiter(key_func=get_remote_address)


def get_runner(session_factory=Depends(get_session_factory)) -> JobRunner:
    return build_runner(session_factory=session_factory)


def require_trigger_token(x_scheduler_token: Optional[str] = Header(default=None)) -> None:
    """Reject trigger calls without the shared token, when one is configured."""
    expected = get_settings().scheduler_trigger_token
    if expected and x_scheduler_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid scheduler token")


@router.post("/execute", dependencies=[Depends(require_trigger_token)])
@limiter.limit("30/minute")  # Cron fires once a minute; leave headroom for manual runs
async def execute_scheduler(request: Request, runner: JobRunner = Depends(get_runner)):
    """
    Claim and run one batch of due jobs.

    Always 200 when the tick itself ran; individual job failures are reported
    per job in `results` and handled by the retry policy.
    """
    summary = await run_once(runner=runner)
    return summary.model_dump(mode="json", by_alias=True)


@router.get("")
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[str] = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    jobs, total = await job_manager.list_jobs(
        db,
        status=status_filter.value if status_filter else None,
        job_type=job_type,
        limit=limit,
        offset=offset,
    )
    stats = await job_manager.job_stats(db)
    return {
        "jobs": [job.to_dict() for job in jobs],
        "stats": stats,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_job(
    body: JobCreate,
    x_user_id: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Enqueue a job. Type and parameters are validated up front."""
    try:
        parse_parameters(body.type, body.parameters)
    except JobError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    settings = get_settings()
    job = await job_manager.enqueue_job(
        db,
        body.type,
        body.name,
        parameters=body.parameters,
        priority=body.priority if body.priority is not None else settings.job_default_priority,
        scheduled_for=to_naive_utc(body.scheduled_for),
        max_retries=body.max_retries if body.max_retries is not None else settings.job_default_max_retries,
        created_by=x_user_id,
    )
    return {"job": job.to_dict()}


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    log_limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    job = await job_manager.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    logs = await job_manager.get_job_logs(db, job_id, log_limit)
    return {"job": job.to_dict(), "logs": [entry.to_dict() for entry in logs]}


@router.put("/{job_id}")
async def update_job(job_id: str, body: JobUpdate, db: AsyncSession = Depends(get_db)):
    job = await job_manager.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    changes = body.model_dump(exclude_unset=True)
    if "status" in changes and changes["status"] is not None:
        changes["status"] = changes["status"].value
    job = await job_manager.update_job(db, job, changes)
    logger.info("job.updated", extra={"job_id": job.id, "status": job.status})
    return {"job": job.to_dict()}


@router.delete("/{job_id}")
async def cancel_job(
    job_id: str,
    x_user_id: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    job = await job_manager.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.status in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {job.status}",
        )

    job = await job_manager.cancel_job(db, job, cancelled_by=x_user_id)
    return {"message": "Job cancelled successfully", "job": job.to_dict()}
