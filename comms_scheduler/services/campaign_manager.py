"""
Campaign store: creation, audience resolution, pause/resume, recipient flag
updates and the due-instance query the dispatcher polls.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.models.parent import Parent
from comms_scheduler.models.recurring_campaign import (
    RecurringCampaign,
    RecurringInstance,
    RecurringRecipient,
)
from comms_scheduler.schemas.campaigns import CampaignCreate, InstanceStatus, TargetAudience
from comms_scheduler.services import recurrence
from comms_scheduler.utils.clock import utcnow, to_naive_utc
from comms_scheduler.utils.logger import get_logger

logger = get_logger("campaigns")


async def find_due_instances(db: AsyncSession, now: datetime, limit: int = 10) -> List[RecurringInstance]:
    result = await db.execute(
        select(RecurringInstance)
        .where(
            and_(
                RecurringInstance.status == InstanceStatus.SCHEDULED.value,
                RecurringInstance.scheduled_for <= now,
            )
        )
        .order_by(RecurringInstance.scheduled_for.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_instance(db: AsyncSession, instance_id: int, status: str, **values) -> bool:
    """Move a scheduled instance to `status`. False if another dispatcher already took it."""
    result = await db.execute(
        update(RecurringInstance)
        .where(
            and_(
                RecurringInstance.id == instance_id,
                RecurringInstance.status == InstanceStatus.SCHEDULED.value,
            )
        )
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def resolve_audience(db: AsyncSession, target_audience: str, audience_filter: Optional[dict]) -> List[str]:
    """Parent ids a new campaign should be sent to."""
    if target_audience == TargetAudience.ALL.value:
        result = await db.execute(select(Parent.id).where(Parent.status == "active"))
        return list(result.scalars().all())
    if target_audience == TargetAudience.SPECIFIC_PARENTS.value:
        return list((audience_filter or {}).get("parentIds") or [])
    return []


async def add_recipients(db: AsyncSession, campaign_id: str, parent_ids: Iterable[str]) -> int:
    """Subscribe parents to a campaign, skipping ones already subscribed. Returns rows added."""
    existing = set(
        (await db.execute(
            select(RecurringRecipient.parent_id).where(RecurringRecipient.campaign_id == campaign_id)
        )).scalars().all()
    )
    added = 0
    for parent_id in dict.fromkeys(parent_ids):
        if parent_id in existing:
            continue
        db.add(RecurringRecipient(campaign_id=campaign_id, parent_id=parent_id))
        added += 1
    await db.commit()
    return added


async def create_campaign(
    db: AsyncSession,
    data: CampaignCreate,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[RecurringCampaign, Optional[RecurringInstance]]:
    """Persist a campaign, subscribe its audience and schedule its first firing."""
    now = now or utcnow()
    campaign = RecurringCampaign(
        name=data.name,
        subject=data.subject,
        body=data.body,
        channel=data.channel,
        interval=data.interval.value,
        interval_value=data.interval_value,
        start_date=to_naive_utc(data.start_date),
        end_date=to_naive_utc(data.end_date),
        max_messages=data.max_messages,
        stop_conditions=[c.value for c in data.stop_conditions],
        target_audience=data.target_audience.value,
        audience_filter=data.audience_filter,
        is_active=True,
        created_by=created_by,
        created_at=now,
    )
    db.add(campaign)
    await db.commit()
    await db.refresh(campaign)

    parent_ids = await resolve_audience(db, campaign.target_audience, campaign.audience_filter)
    added = await add_recipients(db, campaign.id, parent_ids)
    first = await recurrence.schedule_first(db, campaign, now=now)
    logger.info(f"campaign.created recipients={added}", extra={"campaign_id": campaign.id})
    return campaign, first


async def get_campaign(db: AsyncSession, campaign_id: str) -> Optional[RecurringCampaign]:
    return await db.get(RecurringCampaign, campaign_id)


async def list_campaigns(
    db: AsyncSession,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[RecurringCampaign], int]:
    filters = []
    if status == "active":
        filters += [RecurringCampaign.is_active.is_(True), RecurringCampaign.paused_at.is_(None)]
    elif status == "paused":
        filters.append(RecurringCampaign.paused_at.is_not(None))
    elif status == "inactive":
        filters.append(RecurringCampaign.is_active.is_(False))

    result = await db.execute(
        select(RecurringCampaign)
        .where(*filters)
        .order_by(RecurringCampaign.is_active.desc(), RecurringCampaign.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    total = (await db.execute(select(func.count(RecurringCampaign.id)).where(*filters))).scalar_one()
    return list(result.scalars().all()), total


async def get_instances(db: AsyncSession, campaign_id: str, limit: int = 5) -> List[RecurringInstance]:
    result = await db.execute(
        select(RecurringInstance)
        .where(RecurringInstance.campaign_id == campaign_id)
        .order_by(RecurringInstance.scheduled_for.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_recipients(db: AsyncSession, campaign_id: str, active_only: bool = True) -> int:
    filters = [RecurringRecipient.campaign_id == campaign_id]
    if active_only:
        filters.append(RecurringRecipient.is_active.is_(True))
    return (await db.execute(select(func.count(RecurringRecipient.id)).where(*filters))).scalar_one()


async def pause_campaign(
    db: AsyncSession,
    campaign: RecurringCampaign,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Deactivate a campaign and cancel its future instances. Returns instances cancelled."""
    now = now or utcnow()
    campaign.is_active = False
    campaign.paused_at = now
    campaign.paused_reason = reason or "Paused by user"

    result = await db.execute(
        update(RecurringInstance)
        .where(
            and_(
                RecurringInstance.campaign_id == campaign.id,
                RecurringInstance.status == InstanceStatus.SCHEDULED.value,
                RecurringInstance.scheduled_for > now,
            )
        )
        .values(status=InstanceStatus.CANCELLED.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(campaign)
    logger.info(f"campaign.paused cancelled_instances={result.rowcount}", extra={"campaign_id": campaign.id})
    return result.rowcount


async def resume_campaign(
    db: AsyncSession,
    campaign: RecurringCampaign,
    now: Optional[datetime] = None,
) -> Optional[RecurringInstance]:
    """Reactivate a campaign; schedules the next firing only if no instance is still scheduled."""
    now = now or utcnow()
    campaign.is_active = True
    campaign.paused_at = None
    campaign.paused_reason = None
    await db.commit()
    await db.refresh(campaign)

    if await recurrence.has_pending_instance(db, campaign.id):
        return None
    return await recurrence.schedule_next(db, campaign.id, now=now)


async def mark_payment_completed(db: AsyncSession, parent_id: str, now: Optional[datetime] = None) -> int:
    """Flag the parent's active subscriptions as paid; the dispatcher applies the stop rule."""
    now = now or utcnow()
    result = await db.execute(
        update(RecurringRecipient)
        .where(
            and_(
                RecurringRecipient.parent_id == parent_id,
                RecurringRecipient.is_active.is_(True),
                RecurringRecipient.payment_completed.is_(False),
            )
        )
        .values(payment_completed=True, payment_completed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def mark_response_received(db: AsyncSession, parent_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        update(RecurringRecipient)
        .where(
            and_(
                RecurringRecipient.parent_id == parent_id,
                RecurringRecipient.is_active.is_(True),
                RecurringRecipient.response_received.is_(False),
            )
        )
        .values(response_received=True, response_received_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount
