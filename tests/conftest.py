"""Shared test fixtures for the scheduler tests.

Each test gets its own SQLite file so that concurrent sessions (two runners
claiming at once) really are separate connections.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from comms_scheduler.config import Settings
from comms_scheduler.database import Base, get_db, get_session_factory
from comms_scheduler.main import app
from comms_scheduler.routes import jobs as job_routes
from comms_scheduler.services import job_manager
from comms_scheduler.services.delivery import DeliveryClient, DeliveryError, DeliveryResult
from comms_scheduler.utils import metrics
from comms_scheduler.worker import build_runner

# Import all models to ensure they're registered with Base.metadata
from comms_scheduler.models import (
    Parent,
    RecurringCampaign,
    RecurringInstance,
    RecurringRecipient,
)


NOW = datetime(2025, 3, 3, 9, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeDelivery(DeliveryClient):
    """Records every send; addresses in `fail_for` raise DeliveryError."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    async def send(self, address, subject, body, channel):
        if address in self.fail_for:
            raise DeliveryError(f"Mailbox unavailable: {address}")
        self.sent.append({"to": address, "subject": subject, "body": body, "channel": channel})
        return DeliveryResult(success=True, reference=f"ref-{len(self.sent)}")


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create all tables in a fresh database file, dispose after."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Direct DB session for test setup/assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        scheduler_batch_size=5,
        max_concurrent_jobs=1,
        backoff_base_minutes=1,
        program_name="Rise as One Basketball Program",
        scheduler_trigger_token="",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def runner(session_factory, clock, delivery, settings):
    return build_runner(session_factory=session_factory, clock=clock, delivery=delivery, settings=settings)


@pytest_asyncio.fixture
async def client(session_factory, runner):
    """Async HTTP test client wired to the per-test database and runner."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[job_routes.get_runner] = lambda: runner
    job_routes.limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    job_routes.limiter.enabled = True


async def fetch(session_factory, model, pk):
    """Read a row through a fresh session so the test sees committed state."""
    async with session_factory() as session:
        return await session.get(model, pk)


@pytest.fixture
def make_job(db):
    async def _make(job_type="report_generation", name="Nightly report", parameters=None,
                    priority=5, scheduled_for=NOW, max_retries=3):
        return await job_manager.enqueue_job(
            db, job_type, name, parameters=parameters, priority=priority,
            scheduled_for=scheduled_for, max_retries=max_retries, created_by="tests",
        )
    return _make


@pytest.fixture
def make_parent(db):
    async def _make(name="Ada Lovelace", email="ada@example.com", phone="+15550001111", status="active"):
        parent = Parent(name=name, email=email, phone=phone, status=status)
        db.add(parent)
        await db.commit()
        return parent
    return _make


@pytest.fixture
def make_campaign(db):
    """Campaign with the given parents subscribed and one instance due at `due_at`."""
    async def _make(parents, interval="weekly", interval_value=1, stop_conditions=None,
                    max_messages=None, end_date=None, due_at=NOW, is_active=True,
                    subject="Hello {parentName}",
                    body="Hi {parentName}, registration for {programName} is open."):
        campaign = RecurringCampaign(
            name="Registration reminder",
            channel="email",
            subject=subject,
            body=body,
            interval=interval,
            interval_value=interval_value,
            start_date=due_at - timedelta(days=7),
            end_date=end_date,
            max_messages=max_messages,
            stop_conditions=stop_conditions or [],
            target_audience="specific_parents",
            is_active=is_active,
        )
        db.add(campaign)
        await db.flush()
        for parent in parents:
            db.add(RecurringRecipient(campaign_id=campaign.id, parent_id=parent.id))
        instance = RecurringInstance(campaign_id=campaign.id, scheduled_for=due_at, status="scheduled")
        db.add(instance)
        await db.commit()
        return campaign, instance
    return _make
