"""
Database-backed background job store.

Usage:
    job = await job_manager.enqueue_job(db, "recurring_messages", "Send campaigns")
    jobs = await job_manager.claim_batch(db, now, limit=5)
    await job_manager.complete_job(db, job.id, {"totalSent": 12}, now, claimed_at=job.started_at)

Claiming is the only coordination point between concurrent runners: every
claim is a conditional UPDATE (status='pending' → 'running') and a job is only
handed out when that UPDATE actually changed a row.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.models.background_job import BackgroundJob, JobLog
from comms_scheduler.schemas.jobs import JobStatus
from comms_scheduler.utils.clock import utcnow
from comms_scheduler.utils.logger import logger
from comms_scheduler.utils import metrics


def compute_backoff(retry_count: int, base_minutes: int = 1) -> timedelta:
    """Delay before the next attempt: base * 2^retry_count minutes."""
    return timedelta(minutes=base_minutes * (2 ** retry_count))


async def append_log(
    db: AsyncSession,
    job_id: str,
    level: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    commit: bool = True,
) -> None:
    db.add(JobLog(
        job_id=job_id,
        level=level,
        message=message,
        data=data,
        timestamp=timestamp or utcnow(),
    ))
    if commit:
        await db.commit()


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    name: str,
    parameters: Optional[Dict[str, Any]] = None,
    priority: int = 5,
    scheduled_for: Optional[datetime] = None,
    max_retries: int = 3,
    created_by: Optional[str] = None,
) -> BackgroundJob:
    """Create a pending job and its creation log entry"""
    job = BackgroundJob(
        type=job_type,
        name=name,
        status=JobStatus.PENDING.value,
        priority=priority,
        scheduled_for=scheduled_for or utcnow(),
        parameters=parameters,
        max_retries=max_retries,
        created_by=created_by,
    )
    db.add(job)
    await db.flush()
    await append_log(
        db, job.id, "info", f"Job created by {created_by or 'system'}",
        {"type": job_type, "name": name, "priority": priority,
         "scheduledFor": job.scheduled_for.isoformat()},
    )
    await db.refresh(job)
    logger.info("job.enqueued", extra={"job_id": job.id, "job_type": job_type})
    return job


async def get_job(db: AsyncSession, job_id: str) -> Optional[BackgroundJob]:
    result = await db.execute(select(BackgroundJob).where(BackgroundJob.id == job_id))
    return result.scalar_one_or_none()


async def get_job_logs(db: AsyncSession, job_id: str, limit: Optional[int] = None) -> List[JobLog]:
    query = (
        select(JobLog)
        .where(JobLog.job_id == job_id)
        .order_by(JobLog.timestamp.desc(), JobLog.id.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_jobs(
    db: AsyncSession,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[BackgroundJob], int]:
    """Page of jobs (pending/running first, then by priority and due time) plus total."""
    filters = []
    if status:
        filters.append(BackgroundJob.status == status)
    if job_type:
        filters.append(BackgroundJob.type == job_type)

    query = (
        select(BackgroundJob)
        .where(*filters)
        .order_by(BackgroundJob.status.asc(), BackgroundJob.priority.asc(), BackgroundJob.scheduled_for.asc())
        .limit(limit)
        .offset(offset)
    )
    jobs = (await db.execute(query)).scalars().all()
    total = (await db.execute(select(func.count(BackgroundJob.id)).where(*filters))).scalar_one()
    return list(jobs), total


async def job_stats(db: AsyncSession) -> Dict[str, int]:
    rows = await db.execute(
        select(BackgroundJob.status, func.count(BackgroundJob.id)).group_by(BackgroundJob.status)
    )
    counts = {status: count for status, count in rows.all()}
    stats = {s.value: counts.get(s.value, 0) for s in JobStatus}
    stats["total"] = sum(counts.values())
    return stats


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------

async def find_due_jobs(db: AsyncSession, now: datetime, limit: int = 5) -> List[str]:
    """IDs of pending jobs whose scheduled time has passed, most urgent first."""
    result = await db.execute(
        select(BackgroundJob.id)
        .where(
            and_(
                BackgroundJob.status == JobStatus.PENDING.value,
                BackgroundJob.scheduled_for <= now,
            )
        )
        .order_by(BackgroundJob.priority.asc(), BackgroundJob.scheduled_for.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_job(db: AsyncSession, job_id: str, now: datetime) -> bool:
    """Move one job pending → running. False if another runner got there first."""
    result = await db.execute(
        update(BackgroundJob)
        .where(
            and_(
                BackgroundJob.id == job_id,
                BackgroundJob.status == JobStatus.PENDING.value,
            )
        )
        .values(
            status=JobStatus.RUNNING.value,
            started_at=now,
            progress=0,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def claim_batch(db: AsyncSession, now: datetime, limit: int = 5) -> List[BackgroundJob]:
    """
    Claim up to `limit` due jobs and return them in (priority, scheduled_for) order.

    Jobs lost to a concurrent claimer are silently skipped.
    """
    candidates = await find_due_jobs(db, now, limit)
    claimed = [job_id for job_id in candidates if await claim_job(db, job_id, now)]
    if not claimed:
        return []

    result = await db.execute(
        select(BackgroundJob)
        .where(BackgroundJob.id.in_(claimed))
        .order_by(BackgroundJob.priority.asc(), BackgroundJob.scheduled_for.asc())
        .execution_options(populate_existing=True)
    )
    jobs = list(result.scalars().all())
    metrics.inc("jobs.claimed", len(jobs))
    logger.info("job.batch_claimed", extra={"claimed": len(jobs)})
    return jobs


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def update_progress(
    db: AsyncSession,
    job_id: str,
    progress: int,
    step: Optional[str] = None,
) -> None:
    await db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id)
        .values(progress=max(0, min(progress, 100)), current_step=step, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


def _owned_by_attempt(job_id: str, claimed_at: Optional[datetime]):
    """Still running under the claim that started this attempt."""
    return and_(
        BackgroundJob.id == job_id,
        BackgroundJob.status == JobStatus.RUNNING.value,
        BackgroundJob.started_at == claimed_at,
    )


async def complete_job(
    db: AsyncSession,
    job_id: str,
    result_data: Any,
    now: datetime,
    claimed_at: Optional[datetime] = None,
) -> bool:
    """
    Mark the job completed. False when it was cancelled or reclaimed while
    the attempt ran; the stored status is then left alone.
    """
    result = await db.execute(
        update(BackgroundJob)
        .where(_owned_by_attempt(job_id, claimed_at))
        .values(
            status=JobStatus.COMPLETED.value,
            progress=100,
            result=result_data,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.warning("job.outcome_discarded", extra={"job_id": job_id, "outcome": "completed"})
        return False

    metrics.inc("jobs.completed")
    logger.info("job.completed", extra={"job_id": job_id})
    return True


async def record_failure(
    db: AsyncSession,
    job: BackgroundJob,
    error: str,
    now: datetime,
    backoff_base_minutes: int = 1,
) -> Tuple[bool, Optional[datetime]]:
    """
    Apply the retry policy to a failed attempt.

    Returns (will_retry, next_retry_at). A job that has used up max_retries
    becomes terminally failed. Nothing is written when the job is no longer
    running under this attempt's claim (cancelled or reclaimed meanwhile).
    """
    will_retry = job.retry_count < job.max_retries

    if will_retry:
        next_retry_at = now + compute_backoff(job.retry_count, backoff_base_minutes)
        values = dict(
            status=JobStatus.PENDING.value,
            retry_count=job.retry_count + 1,
            next_retry_at=next_retry_at,
            scheduled_for=next_retry_at,
            error_message=error,
            updated_at=now,
        )
    else:
        next_retry_at = None
        values = dict(
            status=JobStatus.FAILED.value,
            completed_at=now,
            error_message=error,
            updated_at=now,
        )

    result = await db.execute(
        update(BackgroundJob)
        .where(_owned_by_attempt(job.id, job.started_at))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.commit()
        logger.warning(
            "job.outcome_discarded",
            extra={"job_id": job.id, "outcome": "failed", "error": error[:200]},
        )
        return False, None

    await append_log(
        db, job.id, "error", f"Job execution failed: {error}",
        {"error": error, "retryCount": job.retry_count + 1, "willRetry": will_retry},
        timestamp=now,
        commit=False,
    )
    await db.commit()

    if will_retry:
        metrics.inc("jobs.retried")
        logger.warning(
            "job.retry_scheduled",
            extra={"job_id": job.id, "job_type": job.type, "retry_count": job.retry_count + 1,
                   "max_retries": job.max_retries, "next_retry_at": next_retry_at.isoformat(),
                   "error": error[:200]},
        )
    else:
        metrics.inc("jobs.failed")
        logger.error(
            "job.failed",
            extra={"job_id": job.id, "job_type": job.type, "retry_count": job.retry_count,
                   "error": error[:200]},
        )
    return will_retry, next_retry_at


async def update_job(db: AsyncSession, job: BackgroundJob, changes: Dict[str, Any]) -> BackgroundJob:
    """Operator edit. Status changes stamp timestamps and leave a log entry."""
    now = utcnow()
    status = changes.get("status")
    for field, value in changes.items():
        setattr(job, field, value)
    if status == JobStatus.RUNNING.value:
        job.started_at = now
    elif status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value):
        job.completed_at = now
    job.updated_at = now

    if status:
        await append_log(
            db, job.id, "error" if status == JobStatus.FAILED.value else "info",
            f"Job status changed to {status}",
            {"newStatus": status, "progress": changes.get("progress"),
             "currentStep": changes.get("current_step"), "errorMessage": changes.get("error_message")},
            commit=False,
        )
    await db.commit()
    await db.refresh(job)
    return job


async def cancel_job(db: AsyncSession, job: BackgroundJob, cancelled_by: Optional[str] = None) -> BackgroundJob:
    now = utcnow()
    job.status = JobStatus.CANCELLED.value
    job.completed_at = now
    job.updated_at = now
    await append_log(
        db, job.id, "info", f"Job cancelled by {cancelled_by or 'system'}",
        {"cancelledBy": cancelled_by, "cancelledAt": now.isoformat()},
        commit=False,
    )
    await db.commit()
    await db.refresh(job)
    return job


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------

async def find_stale_jobs(db: AsyncSession, now: datetime, lease_minutes: int) -> List[BackgroundJob]:
    """Running jobs whose claim is older than the lease (their worker likely died)."""
    cutoff = now - timedelta(minutes=lease_minutes)
    result = await db.execute(
        select(BackgroundJob).where(
            and_(
                BackgroundJob.status == JobStatus.RUNNING.value,
                BackgroundJob.started_at < cutoff,
            )
        )
    )
    return list(result.scalars().all())


async def cleanup_old_jobs(db: AsyncSession, cutoff: datetime) -> Tuple[int, int]:
    """
    Delete jobs completed before `cutoff` together with their logs, and prune
    debug/info log entries older than `cutoff`. Returns (jobs, logs) deleted.
    """
    expired = (
        select(BackgroundJob.id)
        .where(
            and_(
                BackgroundJob.status == JobStatus.COMPLETED.value,
                BackgroundJob.completed_at < cutoff,
            )
        )
    )

    logs_result = await db.execute(
        delete(JobLog)
        .where(
            or_(
                JobLog.job_id.in_(expired),
                and_(JobLog.timestamp < cutoff, JobLog.level.in_(["debug", "info"])),
            )
        )
        .execution_options(synchronize_session=False)
    )
    jobs_result = await db.execute(
        delete(BackgroundJob)
        .where(
            and_(
                BackgroundJob.status == JobStatus.COMPLETED.value,
                BackgroundJob.completed_at < cutoff,
            )
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    deleted_jobs, deleted_logs = jobs_result.rowcount, logs_result.rowcount
    if deleted_jobs or deleted_logs:
        logger.info("job.cleanup", extra={"deleted_jobs": deleted_jobs, "deleted_logs": deleted_logs})
    return deleted_jobs, deleted_logs
