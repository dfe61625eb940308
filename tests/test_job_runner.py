"""Tests for claiming, execution and the retry policy."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from comms_scheduler.models.background_job import BackgroundJob
from comms_scheduler.schemas.jobs import JobType
from comms_scheduler.services import job_manager
from comms_scheduler.services.job_runner import JobRunner
from comms_scheduler.utils import metrics
from comms_scheduler.worker import build_runner

from conftest import NOW, fetch


def _runner_with(handler, session_factory, clock, delivery, settings):
    return JobRunner(
        {JobType.REPORT_GENERATION: handler},
        session_factory=session_factory,
        clock=clock,
        settings=settings,
        delivery=delivery,
    )


def test_backoff_doubles_per_retry():
    assert job_manager.compute_backoff(0) == timedelta(minutes=1)
    assert job_manager.compute_backoff(1) == timedelta(minutes=2)
    assert job_manager.compute_backoff(3) == timedelta(minutes=8)
    assert job_manager.compute_backoff(2, base_minutes=5) == timedelta(minutes=20)


@pytest.mark.asyncio
async def test_successful_job_completes(make_job, session_factory, clock, delivery, settings):
    handler = AsyncMock(return_value={"reportsGenerated": ["job_summary"]})
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job()

    [claimed] = await runner.claim_batch(NOW)
    assert claimed.status == "running"
    assert claimed.started_at == NOW

    outcome = await runner.execute(claimed)

    assert outcome.success is True
    assert outcome.result == {"reportsGenerated": ["job_summary"]}
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "completed"
    assert stored.progress == 100
    assert stored.completed_at == NOW
    assert stored.result == {"reportsGenerated": ["job_summary"]}

    async with session_factory() as session:
        logs = await job_manager.get_job_logs(session, job.id)
    assert "Starting execution of report_generation job" in [entry.message for entry in logs]


@pytest.mark.asyncio
async def test_failed_attempt_schedules_retry_with_backoff(make_job, session_factory, clock, delivery, settings):
    handler = AsyncMock(side_effect=RuntimeError("smtp relay down"))
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job()

    [claimed] = await runner.claim_batch(NOW)
    outcome = await runner.execute(claimed)

    assert outcome.success is False
    assert outcome.will_retry is True
    assert outcome.error == "smtp relay down"
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "pending"
    assert stored.retry_count == 1
    assert stored.next_retry_at == NOW + timedelta(minutes=1)
    assert stored.scheduled_for == stored.next_retry_at
    assert stored.error_message == "smtp relay down"

    # Not due again until the backoff has elapsed
    assert await runner.claim_batch(NOW) == []

    later = clock.advance(minutes=1)
    [claimed] = await runner.claim_batch(later)
    await runner.execute(claimed)

    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.retry_count == 2
    assert stored.next_retry_at == later + timedelta(minutes=2)

    async with session_factory() as session:
        logs = await job_manager.get_job_logs(session, job.id)
    errors = [entry for entry in logs if entry.level == "error"]
    assert len(errors) == 2
    assert errors[0].data["retryCount"] == 2
    assert errors[0].data["willRetry"] is True


@pytest.mark.asyncio
async def test_exhausted_retries_leave_job_failed(make_job, session_factory, clock, delivery, settings):
    handler = AsyncMock(side_effect=RuntimeError("still broken"))
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job(max_retries=1)

    [claimed] = await runner.claim_batch(NOW)
    first = await runner.execute(claimed)
    assert first.will_retry is True
    first_retry_at = (await fetch(session_factory, BackgroundJob, job.id)).next_retry_at

    later = clock.advance(minutes=5)
    [claimed] = await runner.claim_batch(later)
    second = await runner.execute(claimed)

    assert second.success is False
    assert second.will_retry is False
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "failed"
    assert stored.retry_count == 1
    assert stored.completed_at == later
    assert stored.next_retry_at == first_retry_at

    clock.advance(hours=1)
    assert await runner.claim_batch(clock()) == []


@pytest.mark.asyncio
async def test_zero_retry_budget_fails_immediately(make_job, session_factory, clock, delivery, settings):
    handler = AsyncMock(side_effect=ValueError("bad data"))
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job(max_retries=0)

    [claimed] = await runner.claim_batch(NOW)
    outcome = await runner.execute(claimed)

    assert outcome.will_retry is False
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "failed"
    assert stored.retry_count == 0
    assert stored.next_retry_at is None


@pytest.mark.asyncio
async def test_unknown_job_type_consumes_retry_budget(db, runner, session_factory):
    job = BackgroundJob(type="legacy_sync", name="Old sync", scheduled_for=NOW)
    db.add(job)
    await db.commit()

    [claimed] = await runner.claim_batch(NOW)
    outcome = await runner.execute(claimed)

    assert outcome.success is False
    assert outcome.will_retry is True
    assert outcome.error == "Unknown job type: legacy_sync"
    assert (await fetch(session_factory, BackgroundJob, job.id)).retry_count == 1


@pytest.mark.asyncio
async def test_invalid_parameters_fail_the_attempt(make_job, runner):
    await make_job(job_type="retention_cleanup", parameters={"retentionDays": 0})

    [claimed] = await runner.claim_batch(NOW)
    outcome = await runner.execute(claimed)

    assert outcome.success is False
    assert "Invalid parameters for retention_cleanup" in outcome.error


@pytest.mark.asyncio
async def test_claim_batch_orders_by_priority_then_due_time(make_job, runner):
    low = await make_job(name="low", priority=9)
    urgent = await make_job(name="urgent", priority=1, scheduled_for=NOW - timedelta(minutes=1))
    urgent_later = await make_job(name="urgent later", priority=1)
    await make_job(name="future", priority=1, scheduled_for=NOW + timedelta(hours=1))

    claimed = await runner.claim_batch(NOW)

    assert [job.id for job in claimed] == [urgent.id, urgent_later.id, low.id]


@pytest.mark.asyncio
async def test_claim_batch_respects_limit(make_job, runner):
    for i in range(4):
        await make_job(name=f"job {i}")

    assert len(await runner.claim_batch(NOW, limit=3)) == 3
    assert len(await runner.claim_batch(NOW, limit=3)) == 1


@pytest.mark.asyncio
async def test_claim_job_is_conditional(make_job, db):
    job = await make_job()

    assert await job_manager.claim_job(db, job.id, NOW) is True
    assert await job_manager.claim_job(db, job.id, NOW) is False


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(make_job, session_factory, clock, delivery, settings):
    ids = {(await make_job(name=f"job {i}")).id for i in range(5)}
    first = build_runner(session_factory=session_factory, clock=clock, delivery=delivery, settings=settings)
    second = build_runner(session_factory=session_factory, clock=clock, delivery=delivery, settings=settings)

    batch_a, batch_b = await asyncio.gather(first.claim_batch(NOW), second.claim_batch(NOW))

    claimed_a = {job.id for job in batch_a}
    claimed_b = {job.id for job in batch_b}
    assert claimed_a.isdisjoint(claimed_b)
    assert claimed_a | claimed_b == ids


@pytest.mark.asyncio
async def test_cancelled_job_is_never_claimed(make_job, db, runner):
    job = await make_job()
    await job_manager.cancel_job(db, job, cancelled_by="ops")

    assert await runner.claim_batch(NOW) == []


@pytest.mark.asyncio
async def test_stale_running_job_is_reaped_when_lease_configured(db, session_factory, clock, delivery, settings):
    settings.job_lease_minutes = 30
    runner = build_runner(session_factory=session_factory, clock=clock, delivery=delivery, settings=settings)
    job = BackgroundJob(
        type="report_generation", name="stuck", status="running",
        scheduled_for=NOW - timedelta(hours=3), started_at=NOW - timedelta(hours=2),
    )
    db.add(job)
    await db.commit()

    assert await runner.reap_stale(NOW) == 1

    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "pending"
    assert stored.retry_count == 1
    assert "lease" in stored.error_message


@pytest.mark.asyncio
async def test_reaper_disabled_by_default(db, runner):
    db.add(BackgroundJob(
        type="report_generation", name="long", status="running",
        scheduled_for=NOW, started_at=NOW - timedelta(days=1),
    ))
    await db.commit()

    assert await runner.reap_stale(NOW) == 0


@pytest.mark.asyncio
async def test_cancel_during_failing_attempt_is_not_retried(make_job, db, session_factory, clock, delivery, settings):
    handler = AsyncMock(side_effect=RuntimeError("smtp relay down"))
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job()

    [claimed] = await runner.claim_batch(NOW)
    await job_manager.cancel_job(db, job, cancelled_by="ops")
    outcome = await runner.execute(claimed)

    assert outcome.success is False
    assert outcome.will_retry is False
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "cancelled"
    assert stored.retry_count == 0
    assert stored.next_retry_at is None
    assert await runner.claim_batch(clock.advance(hours=1)) == []


@pytest.mark.asyncio
async def test_reaped_attempt_cannot_complete_the_reclaimed_job(make_job, session_factory, clock, delivery, settings):
    settings.job_lease_minutes = 30
    handler = AsyncMock(return_value={"ok": True})
    runner = _runner_with(handler, session_factory, clock, delivery, settings)
    job = await make_job()

    [stuck] = await runner.claim_batch(NOW)
    assert await runner.reap_stale(clock.advance(hours=1)) == 1
    [reclaimed] = await runner.claim_batch(clock.advance(minutes=2))

    await runner.execute(stuck)
    assert (await fetch(session_factory, BackgroundJob, job.id)).status == "running"

    await runner.execute(reclaimed)
    stored = await fetch(session_factory, BackgroundJob, job.id)
    assert stored.status == "completed"
    assert stored.completed_at == clock()
    assert metrics.get_snapshot()["counters"]["jobs.completed"] == 1
