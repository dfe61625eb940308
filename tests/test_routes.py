"""Tests for the HTTP surface."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from comms_scheduler.config import get_settings
from comms_scheduler.models.recurring_campaign import RecurringRecipient

from conftest import NOW


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client):
    resp = await client.get("/health", headers={"X-Correlation-ID": "cron-42"})
    assert resp.headers["X-Correlation-ID"] == "cron-42"


@pytest.mark.asyncio
async def test_metrics_snapshot(client):
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) >= {"counters", "histograms", "circuits"}


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_job_applies_defaults(client):
    resp = await client.post(
        "/api/background-jobs",
        json={"type": "retention_cleanup", "name": "Cleanup"},
        headers={"X-User-ID": "admin-1"},
    )
    assert resp.status_code == 201
    job = resp.json()["job"]
    assert job["status"] == "pending"
    assert job["priority"] == 5
    assert job["maxRetries"] == 3
    assert job["retryCount"] == 0
    assert job["createdBy"] == "admin-1"

    detail = await client.get(f"/api/background-jobs/{job['id']}")
    assert detail.status_code == 200
    assert detail.json()["logs"][0]["message"] == "Job created by admin-1"


@pytest.mark.asyncio
async def test_create_job_rejects_unknown_type(client):
    resp = await client.post("/api/background-jobs", json={"type": "crypto_mining", "name": "x"})
    assert resp.status_code == 400
    assert "Unknown job type" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_create_job_rejects_bad_parameters(client):
    resp = await client.post(
        "/api/background-jobs",
        json={"type": "recurring_messages", "name": "x", "parameters": {"instanceLimit": 0}},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_get_missing_job(client):
    resp = await client.get("/api/background-jobs/nope")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_jobs_filters_and_counts(client, make_job):
    await make_job(job_type="report_generation", name="Report")
    await make_job(job_type="retention_cleanup", name="Cleanup")

    resp = await client.get("/api/background-jobs", params={"type": "retention_cleanup"})

    body = resp.json()
    assert [job["name"] for job in body["jobs"]] == ["Cleanup"]
    assert body["pagination"]["total"] == 1
    assert body["stats"]["pending"] == 2
    assert body["stats"]["total"] == 2


@pytest.mark.asyncio
async def test_update_job_status_stamps_timestamps(client, make_job):
    job = await make_job()

    resp = await client.put(f"/api/background-jobs/{job.id}", json={"status": "running", "progress": 40})

    assert resp.status_code == 200
    updated = resp.json()["job"]
    assert updated["status"] == "running"
    assert updated["progress"] == 40
    assert updated["startedAt"] is not None

    logs = (await client.get(f"/api/background-jobs/{job.id}")).json()["logs"]
    assert logs[0]["message"] == "Job status changed to running"


@pytest.mark.asyncio
async def test_cancel_job(client, make_job):
    job = await make_job()

    resp = await client.delete(f"/api/background-jobs/{job.id}")
    assert resp.status_code == 200
    assert resp.json()["job"]["status"] == "cancelled"

    again = await client.delete(f"/api/background-jobs/{job.id}")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_cancel_while_running_survives_the_attempt(client, make_job, runner):
    job = await make_job(job_type="report_generation", name="Report")
    [claimed] = await runner.claim_batch(NOW)

    resp = await client.delete(f"/api/background-jobs/{job.id}")
    assert resp.status_code == 200

    outcome = await runner.execute(claimed)

    assert outcome.success is True
    detail = (await client.get(f"/api/background-jobs/{job.id}")).json()
    assert detail["job"]["status"] == "cancelled"
    assert detail["job"]["result"] is None


@pytest.mark.asyncio
async def test_execute_runs_due_jobs(client):
    created = await client.post(
        "/api/background-jobs",
        json={"type": "report_generation", "name": "Report", "scheduledFor": (NOW - timedelta(minutes=5)).isoformat()},
    )
    job_id = created.json()["job"]["id"]

    resp = await client.post("/api/background-jobs/execute")

    assert resp.status_code == 200
    body = resp.json()
    assert body["processedJobs"] == 1
    assert body["results"][0]["jobId"] == job_id
    assert body["results"][0]["success"] is True

    detail = (await client.get(f"/api/background-jobs/{job_id}")).json()
    assert detail["job"]["status"] == "completed"


@pytest.mark.asyncio
async def test_execute_requires_token_when_configured(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "scheduler_trigger_token", "s3cret")

    denied = await client.post("/api/background-jobs/execute")
    allowed = await client.post("/api/background-jobs/execute", headers={"X-Scheduler-Token": "s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"processedJobs": 0, "results": []}


# ---------------------------------------------------------------------------
# Recurring messages
# ---------------------------------------------------------------------------

START = datetime(2030, 1, 6, 16, 0)


async def _create_campaign(client, parent_ids, **overrides):
    payload = {
        "name": "Registration reminder",
        "subject": "Reminder for {parentName}",
        "body": "Hi {parentName}, spots for {programName} are filling up.",
        "interval": "weekly",
        "intervalValue": 1,
        "startDate": START.isoformat(),
        "stopConditions": ["payment_completion", "user_response"],
        "targetAudience": "specific_parents",
        "audienceFilter": {"parentIds": parent_ids},
    }
    payload.update(overrides)
    return await client.post("/api/recurring-messages", json=payload)


@pytest.mark.asyncio
async def test_create_campaign_schedules_first_instance(client, make_parent):
    ada = await make_parent("Ada", "ada@example.com")
    grace = await make_parent("Grace", "grace@example.com")

    resp = await _create_campaign(client, [ada.id, grace.id, ada.id])

    assert resp.status_code == 201
    body = resp.json()
    assert body["recipientCount"] == 2
    assert body["recurringMessage"]["isActive"] is True
    assert body["nextInstance"]["scheduledFor"] == (START + timedelta(days=7)).isoformat()

    listing = (await client.get("/api/recurring-messages")).json()
    assert listing["pagination"]["total"] == 1
    assert listing["recurringMessages"][0]["activeRecipients"] == 2


@pytest.mark.asyncio
async def test_create_campaign_for_all_active_parents(client, make_parent):
    await make_parent("Ada", "ada@example.com")
    await make_parent("Former", "former@example.com", status="inactive")

    resp = await _create_campaign(client, [], targetAudience="all", audienceFilter=None)

    assert resp.json()["recipientCount"] == 1


@pytest.mark.asyncio
async def test_create_campaign_validation(client):
    missing_body = await client.post("/api/recurring-messages", json={
        "name": "x", "interval": "weekly", "startDate": START.isoformat(),
    })
    bad_interval = await _create_campaign(client, [], interval="hourly")
    bad_range = await _create_campaign(client, [], endDate=(START - timedelta(days=1)).isoformat())

    assert missing_body.status_code == 422
    assert bad_interval.status_code == 422
    assert bad_range.status_code == 400


@pytest.mark.asyncio
async def test_pause_and_resume(client, make_parent):
    ada = await make_parent("Ada", "ada@example.com")
    campaign_id = (await _create_campaign(client, [ada.id])).json()["recurringMessage"]["id"]

    paused = await client.post(f"/api/recurring-messages/{campaign_id}/pause", json={"reason": "Season over"})
    assert paused.status_code == 200
    assert paused.json()["cancelledInstances"] == 1
    assert paused.json()["recurringMessage"]["pausedReason"] == "Season over"

    again = await client.post(f"/api/recurring-messages/{campaign_id}/pause")
    assert again.status_code == 409

    resumed = await client.post(f"/api/recurring-messages/{campaign_id}/resume")
    assert resumed.status_code == 200
    assert resumed.json()["recurringMessage"]["isActive"] is True
    assert resumed.json()["recurringMessage"]["pausedAt"] is None
    assert resumed.json()["nextInstance"]["status"] == "scheduled"

    detail = (await client.get(f"/api/recurring-messages/{campaign_id}")).json()
    statuses = sorted(instance["status"] for instance in detail["recentInstances"])
    assert statuses == ["cancelled", "scheduled"]


@pytest.mark.asyncio
async def test_get_missing_campaign(client):
    resp = await client.get("/api/recurring-messages/nope")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_record_response_flags_recipient(client, make_parent, session_factory):
    ada = await make_parent("Ada", "ada@example.com")
    await _create_campaign(client, [ada.id])

    resp = await client.post(f"/api/recurring-messages/responses/{ada.id}")

    assert resp.status_code == 200
    assert resp.json()["recipientsUpdated"] == 1
    async with session_factory() as session:
        recipient = (await session.execute(
            select(RecurringRecipient).where(RecurringRecipient.parent_id == ada.id)
        )).scalar_one()
    assert recipient.response_received is True
