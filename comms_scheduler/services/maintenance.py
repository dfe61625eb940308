"""Housekeeping handlers: retention cleanup and periodic reports."""
from datetime import datetime, timedelta
from typing import Any, Dict

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.models.background_job import BackgroundJob
from comms_scheduler.models.recurring_campaign import RecurringInstance, RecurringMessageLog
from comms_scheduler.schemas.campaigns import InstanceStatus
from comms_scheduler.schemas.jobs import (
    InvalidJobParametersError,
    ReportGenerationParams,
    ReportGenerationResult,
    RetentionCleanupParams,
    RetentionCleanupResult,
)
from comms_scheduler.services import job_manager
from comms_scheduler.services.job_runner import JobContext


async def execute_retention_cleanup(ctx: JobContext, params: RetentionCleanupParams) -> RetentionCleanupResult:
    days = params.retention_days or ctx.settings.job_retention_days
    cutoff = ctx.now() - timedelta(days=days)
    deleted_jobs, deleted_logs = await job_manager.cleanup_old_jobs(ctx.db, cutoff)
    return RetentionCleanupResult(deleted_jobs=deleted_jobs, deleted_logs=deleted_logs, cutoff=cutoff)


async def _job_summary(db: AsyncSession, since: datetime) -> Dict[str, Any]:
    rows = await db.execute(
        select(BackgroundJob.type, BackgroundJob.status, func.count(BackgroundJob.id))
        .where(BackgroundJob.created_at >= since)
        .group_by(BackgroundJob.type, BackgroundJob.status)
    )
    by_type: Dict[str, Dict[str, int]] = {}
    by_status: Dict[str, int] = {}
    for job_type, status, count in rows.all():
        by_type.setdefault(job_type, {})[status] = count
        by_status[status] = by_status.get(status, 0) + count
    return {"byStatus": by_status, "byType": by_type, "total": sum(by_status.values())}


async def _engagement_metrics(db: AsyncSession, since: datetime) -> Dict[str, Any]:
    instances_sent = (await db.execute(
        select(func.count(RecurringInstance.id)).where(
            and_(
                RecurringInstance.status == InstanceStatus.SENT.value,
                RecurringInstance.actual_sent_at >= since,
            )
        )
    )).scalar_one()

    rows = await db.execute(
        select(RecurringMessageLog.status, func.count(RecurringMessageLog.id))
        .where(RecurringMessageLog.created_at >= since)
        .group_by(RecurringMessageLog.status)
    )
    deliveries = {status: count for status, count in rows.all()}
    attempted = deliveries.get("sent", 0) + deliveries.get("failed", 0)
    return {
        "instancesSent": instances_sent,
        "deliveries": deliveries,
        "deliveryRate": round(deliveries.get("sent", 0) / attempted, 4) if attempted else None,
    }


REPORT_BUILDERS = {
    "job_summary": _job_summary,
    "engagement_metrics": _engagement_metrics,
}


async def execute_report_generation(ctx: JobContext, params: ReportGenerationParams) -> ReportGenerationResult:
    unknown = [name for name in params.reports if name not in REPORT_BUILDERS]
    if unknown:
        raise InvalidJobParametersError(f"Unknown report(s): {', '.join(unknown)}")

    now = ctx.now()
    since = now - timedelta(days=params.period_days)
    reports = {}
    for name in params.reports:
        reports[name] = await REPORT_BUILDERS[name](ctx.db, since)

    return ReportGenerationResult(reports_generated=list(reports), generated_at=now, reports=reports)
