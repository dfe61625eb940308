"""
Job runner: claims due jobs and drives each through one execution attempt.

    runner = JobRunner(handlers)
    jobs = await runner.claim_batch(now)
    outcome = await runner.execute(jobs[0])

The claim is committed before a handler starts; the attempt's outcome is
written afterwards in a separate update, so no lock is held across handler I/O.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.config import Settings, get_settings
from comms_scheduler.database import AsyncSessionLocal
from comms_scheduler.models.background_job import BackgroundJob
from comms_scheduler.schemas.jobs import (
    JobRunResult,
    JobType,
    UnknownJobTypeError,
    dump_result,
    parse_parameters,
)
from comms_scheduler.services import job_manager
from comms_scheduler.services.delivery import DeliveryClient, get_delivery_client
from comms_scheduler.utils.clock import Clock, utcnow
from comms_scheduler.utils.logger import logger
from comms_scheduler.utils.metrics import track_duration

Handler = Callable[["JobContext", Any], Awaitable[Any]]


@dataclass
class JobContext:
    """What a handler gets besides its typed parameters."""
    job: BackgroundJob
    db: AsyncSession
    settings: Settings
    delivery: DeliveryClient
    clock: Clock = utcnow
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal

    def now(self) -> datetime:
        return self.clock()

    async def progress(self, percent: int, step: Optional[str] = None) -> None:
        await job_manager.update_progress(self.db, self.job.id, percent, step)

    async def log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        await job_manager.append_log(self.db, self.job.id, level, message, data, timestamp=self.now())


class JobRunner:
    def __init__(
        self,
        handlers: Dict[JobType, Handler],
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
        delivery: Optional[DeliveryClient] = None,
    ):
        self.handlers = handlers
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings or get_settings()
        self.delivery = delivery or get_delivery_client()

    async def reap_stale(self, now: datetime) -> int:
        """Fail (and possibly retry) running jobs whose claim outlived the lease."""
        lease = self.settings.job_lease_minutes
        if not lease:
            return 0
        async with self.session_factory() as db:
            stale = await job_manager.find_stale_jobs(db, now, lease)
            for job in stale:
                await job_manager.record_failure(
                    db, job, f"Claim lease of {lease} minutes expired while running",
                    now, self.settings.backoff_base_minutes,
                )
        return len(stale)

    async def claim_batch(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[BackgroundJob]:
        now = now or self.clock()
        async with self.session_factory() as db:
            return await job_manager.claim_batch(db, now, limit or self.settings.scheduler_batch_size)

    async def _dispatch(self, ctx: JobContext) -> Any:
        job = ctx.job
        params = parse_parameters(job.type, job.parameters)
        handler = self.handlers.get(JobType(job.type))
        if handler is None:
            raise UnknownJobTypeError(job.type)
        async with track_duration(f"handler.{job.type}"):
            return await handler(ctx, params)

    async def execute(self, job: BackgroundJob) -> JobRunResult:
        """
        Run one claimed job and persist the outcome.

        Any exception from the handler (including an unknown type or bad
        parameters) is a failed attempt handled by the retry policy; nothing
        propagates to the caller.
        """
        async with self.session_factory() as db:
            await job_manager.append_log(
                db, job.id, "info", f"Starting execution of {job.type} job",
                job.parameters, timestamp=self.clock(),
            )
            logger.info(
                "job.started",
                extra={"job_id": job.id, "job_type": job.type, "attempt": job.retry_count + 1},
            )
            ctx = JobContext(
                job=job,
                db=db,
                settings=self.settings,
                delivery=self.delivery,
                clock=self.clock,
                session_factory=self.session_factory,
            )

            try:
                result = dump_result(await self._dispatch(ctx))
            except Exception as exc:
                await db.rollback()
                error = str(exc) or type(exc).__name__
                logger.error(
                    "job.handler_error",
                    extra={"job_id": job.id, "job_type": job.type,
                           "error": error[:500], "error_type": type(exc).__name__},
                )
                will_retry, _ = await job_manager.record_failure(
                    db, job, error[:1000], self.clock(), self.settings.backoff_base_minutes,
                )
                return JobRunResult(job_id=job.id, success=False, error=error, will_retry=will_retry)

            await job_manager.complete_job(db, job.id, result, self.clock(), claimed_at=job.started_at)
            return JobRunResult(job_id=job.id, success=True, result=result)
