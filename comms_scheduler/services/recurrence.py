"""
Recurrence engine: decides when a campaign fires next and creates that instance.

A campaign has at most one `scheduled` instance waiting. The dispatcher only
calls schedule_next() after the waiting instance has moved to `sent`, and
campaign creation/resume only call it when nothing is waiting.
"""
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.models.recurring_campaign import RecurringCampaign, RecurringInstance
from comms_scheduler.schemas.campaigns import IntervalKind, InstanceStatus
from comms_scheduler.utils.clock import utcnow
from comms_scheduler.utils.logger import get_logger

logger = get_logger("recurrence")


def compute_next_run(interval: str, interval_value: int, anchor: datetime) -> datetime:
    """
    Advance `anchor` by one campaign interval.

    Monthly steps are calendar months (Jan 31 + 1 month = Feb 28/29). Custom and
    unrecognised kinds advance one day.
    """
    value = interval_value or 1
    if interval == IntervalKind.DAILY.value:
        return anchor + timedelta(days=value)
    if interval == IntervalKind.WEEKLY.value:
        return anchor + timedelta(days=value * 7)
    if interval == IntervalKind.MONTHLY.value:
        return anchor + relativedelta(months=value)
    return anchor + timedelta(days=1)


async def has_pending_instance(db: AsyncSession, campaign_id: str, after: Optional[datetime] = None) -> bool:
    filters = [
        RecurringInstance.campaign_id == campaign_id,
        RecurringInstance.status == InstanceStatus.SCHEDULED.value,
    ]
    if after is not None:
        filters.append(RecurringInstance.scheduled_for > after)
    count = (await db.execute(select(func.count(RecurringInstance.id)).where(and_(*filters)))).scalar_one()
    return count > 0


async def schedule_next(
    db: AsyncSession,
    campaign_id: str,
    now: Optional[datetime] = None,
    anchor: Optional[datetime] = None,
) -> Optional[RecurringInstance]:
    """
    Create the campaign's next scheduled instance.

    The next run is one interval after `anchor` (defaults to `now`). Returns
    None without creating anything when the campaign is missing, inactive, or
    the next run would fall after its end date.
    """
    now = now or utcnow()
    campaign = await db.get(RecurringCampaign, campaign_id, populate_existing=True)
    if campaign is None or not campaign.is_active:
        return None

    next_run = compute_next_run(campaign.interval, campaign.interval_value, anchor or now)

    if campaign.end_date and next_run > campaign.end_date:
        logger.info(
            "campaign.schedule_ended",
            extra={"campaign_id": campaign_id, "next_run": next_run.isoformat()},
        )
        return None

    instance = RecurringInstance(
        campaign_id=campaign_id,
        scheduled_for=next_run,
        status=InstanceStatus.SCHEDULED.value,
        created_at=now,
    )
    db.add(instance)
    await db.commit()
    await db.refresh(instance)
    logger.info("campaign.instance_scheduled", extra={"campaign_id": campaign_id, "instance_id": instance.id})
    return instance


async def schedule_first(db: AsyncSession, campaign: RecurringCampaign, now: Optional[datetime] = None) -> Optional[RecurringInstance]:
    """First firing of a new campaign: one interval after its start date."""
    return await schedule_next(db, campaign.id, now=now, anchor=campaign.start_date)
