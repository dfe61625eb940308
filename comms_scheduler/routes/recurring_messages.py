"""
Recurring Message API Routes

Create, inspect, pause and resume recurring campaigns, and record parent
replies so the user_response stop condition can fire.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.database import get_db
from comms_scheduler.schemas.campaigns import CampaignCreate, PauseRequest
from comms_scheduler.services import campaign_manager
from comms_scheduler.utils.clock import to_naive_utc

router = APIRouter()


async def _get_or_404(db: AsyncSession, campaign_id: str):
    campaign = await campaign_manager.get_campaign(db, campaign_id)
    if campaign is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recurring message not found")
    return campaign


@router.get("")
async def list_recurring_messages(
    status_filter: Optional[str] = Query(default=None, alias="status", pattern="^(active|paused|inactive)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    campaigns, total = await campaign_manager.list_campaigns(db, status_filter, limit, offset)
    items = []
    for campaign in campaigns:
        data = campaign.to_dict()
        data["activeRecipients"] = await campaign_manager.count_recipients(db, campaign.id)
        items.append(data)
    return {
        "recurringMessages": items,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_recurring_message(
    body: CampaignCreate,
    x_user_id: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Create a campaign, subscribe its audience and schedule the first send."""
    if body.end_date is not None and to_naive_utc(body.end_date) <= to_naive_utc(body.start_date):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="endDate must be after startDate",
        )

    campaign, first = await campaign_manager.create_campaign(db, body, created_by=x_user_id)
    return {
        "recurringMessage": campaign.to_dict(),
        "recipientCount": await campaign_manager.count_recipients(db, campaign.id),
        "nextInstance": first.to_dict() if first else None,
    }


@router.get("/{campaign_id}")
async def get_recurring_message(campaign_id: str, db: AsyncSession = Depends(get_db)):
    campaign = await _get_or_404(db, campaign_id)
    instances = await campaign_manager.get_instances(db, campaign.id)
    return {
        "recurringMessage": campaign.to_dict(),
        "activeRecipients": await campaign_manager.count_recipients(db, campaign.id),
        "totalRecipients": await campaign_manager.count_recipients(db, campaign.id, active_only=False),
        "recentInstances": [instance.to_dict() for instance in instances],
    }


@router.post("/{campaign_id}/pause")
async def pause_recurring_message(
    campaign_id: str,
    body: Optional[PauseRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    campaign = await _get_or_404(db, campaign_id)
    if not campaign.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Recurring message is not active")

    cancelled = await campaign_manager.pause_campaign(db, campaign, reason=body.reason if body else None)
    return {"recurringMessage": campaign.to_dict(), "cancelledInstances": cancelled}


@router.post("/{campaign_id}/resume")
async def resume_recurring_message(campaign_id: str, db: AsyncSession = Depends(get_db)):
    campaign = await _get_or_404(db, campaign_id)
    if campaign.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Recurring message is already active")

    scheduled = await campaign_manager.resume_campaign(db, campaign)
    return {
        "recurringMessage": campaign.to_dict(),
        "nextInstance": scheduled.to_dict() if scheduled else None,
    }


@router.post("/responses/{parent_id}")
async def record_response(parent_id: str, db: AsyncSession = Depends(get_db)):
    """A parent replied; campaigns that stop on user_response drop them at the next send."""
    updated = await campaign_manager.mark_response_received(db, parent_id)
    return {"parentId": parent_id, "recipientsUpdated": updated}
