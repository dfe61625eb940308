"""
Scheduler loop: polls background_jobs and dispatches claimed jobs to handlers.

Can run as:
  1. The HTTP trigger (POST /api/background-jobs/execute) calling run_once()
  2. Standalone worker: python -m comms_scheduler.worker

Handles:
  - recurring_messages: due campaign instances → deliveries → next instance
  - webhook_replay: unprocessed Stripe events
  - insight_generation: AI recommendations refresh
  - retention_cleanup: old completed jobs and logs
  - report_generation: job and engagement summaries

Several ticks may overlap (cron firing while a previous tick drains); the
claim step guarantees they never execute the same job.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional

from comms_scheduler.schemas.jobs import JobRunResult, JobType, RunSummary
from comms_scheduler.services.delivery import DeliveryClient
from comms_scheduler.services.job_runner import Handler, JobRunner
from comms_scheduler.utils.clock import Clock, utcnow
from comms_scheduler.utils.context import new_correlation_id
from comms_scheduler.utils.logger import logger


# ---------------------------------------------------------------------------
# Job handler registry
# ---------------------------------------------------------------------------
_handlers: Dict[JobType, Handler] = {}


def register_handler(job_type: JobType, handler: Handler) -> None:
    """Register an async handler for a job type."""
    _handlers[JobType(job_type)] = handler


def _register_default_handlers() -> None:
    """Register built-in job type handlers."""
    # Imported here so handler modules can import the runner without a cycle
    from comms_scheduler.services.dispatcher import execute_recurring_messages
    from comms_scheduler.services.insights import execute_insight_generation
    from comms_scheduler.services.maintenance import execute_report_generation, execute_retention_cleanup
    from comms_scheduler.services.webhook_replay import execute_webhook_replay

    register_handler(JobType.RECURRING_MESSAGES, execute_recurring_messages)
    register_handler(JobType.WEBHOOK_REPLAY, execute_webhook_replay)
    register_handler(JobType.INSIGHT_GENERATION, execute_insight_generation)
    register_handler(JobType.RETENTION_CLEANUP, execute_retention_cleanup)
    register_handler(JobType.REPORT_GENERATION, execute_report_generation)


def get_handlers() -> Dict[JobType, Handler]:
    if not _handlers:
        _register_default_handlers()
    return dict(_handlers)


def build_runner(
    session_factory: Optional[Callable] = None,
    clock: Clock = utcnow,
    delivery: Optional[DeliveryClient] = None,
    settings=None,
) -> JobRunner:
    kwargs = {"clock": clock, "delivery": delivery, "settings": settings}
    if session_factory is not None:
        kwargs["session_factory"] = session_factory
    return JobRunner(get_handlers(), **kwargs)


# ---------------------------------------------------------------------------
# One tick
# ---------------------------------------------------------------------------

async def run_once(
    now: Optional[datetime] = None,
    runner: Optional[JobRunner] = None,
    max_concurrent: Optional[int] = None,
) -> RunSummary:
    """
    Claim one batch of due jobs and execute it.

    Jobs run in claim order. With max_concurrent > 1 up to that many run at
    once; each claimed job is still executed exactly once by this tick.
    """
    runner = runner or build_runner()
    new_correlation_id("tick-")
    now = now or runner.clock()

    reaped = await runner.reap_stale(now)
    if reaped:
        logger.warning("worker.reaped_stale_jobs", extra={"processed": reaped})

    jobs = await runner.claim_batch(now)
    concurrency = max(1, max_concurrent or runner.settings.max_concurrent_jobs)

    if concurrency == 1:
        results: List[JobRunResult] = []
        for job in jobs:
            results.append(await runner.execute(job))
    else:
        pool = asyncio.Semaphore(concurrency)

        async def _bounded(job):
            async with pool:
                return await runner.execute(job)

        results = list(await asyncio.gather(*(_bounded(job) for job in jobs)))

    if jobs:
        logger.info(
            "worker.tick_complete",
            extra={"processed": len(results), "failed": sum(1 for r in results if not r.success)},
        )
    return RunSummary(processed_jobs=len(results), results=results)


# ---------------------------------------------------------------------------
# Worker loop
# ---------------------------------------------------------------------------

async def worker_loop(
    poll_interval: Optional[float] = None,
    max_idle_interval: Optional[float] = None,
    runner: Optional[JobRunner] = None,
) -> None:
    """
    Call run_once() forever.

    Adaptive polling: starts at poll_interval, backs off towards
    max_idle_interval while ticks find nothing, resets when a job runs.
    """
    runner = runner or build_runner()
    poll_interval = poll_interval or runner.settings.scheduler_poll_interval
    max_idle_interval = max_idle_interval or runner.settings.scheduler_max_idle_interval
    current_interval = poll_interval
    logger.info(f"worker.started poll_interval={poll_interval}")

    while True:
        try:
            summary = await run_once(runner=runner)
            if summary.processed_jobs:
                current_interval = poll_interval
            else:
                current_interval = min(current_interval * 1.5, max_idle_interval)
        except Exception as exc:
            logger.error("worker.poll_error", extra={"error": str(exc)[:500]})
            current_interval = max_idle_interval

        await asyncio.sleep(current_interval)


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from comms_scheduler.database import init_db
    await init_db()
    await worker_loop()


if __name__ == "__main__":
    asyncio.run(main())
