"""
Replay of stored Stripe webhook events.

Events land in stripe_webhook_events on receipt; this job applies the ones
that were never processed. Failures are counted per event and an event stops
being retried once it reaches the configured limit.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from comms_scheduler.models.webhook_event import StripeWebhookEvent
from comms_scheduler.schemas.jobs import WebhookReplayParams, WebhookReplayResult
from comms_scheduler.services import campaign_manager
from comms_scheduler.services.job_runner import JobContext
from comms_scheduler.utils.logger import get_logger

logger = get_logger("webhooks")

PAYMENT_SUCCEEDED_EVENTS = {"invoice.payment_succeeded", "payment_intent.succeeded"}


def _parent_id_from(payload: Dict[str, Any]) -> Optional[str]:
    obj = (payload or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    return metadata.get("parent_id") or metadata.get("parentId")


async def get_pending_events(db: AsyncSession, limit: int, max_retries: int):
    result = await db.execute(
        select(StripeWebhookEvent)
        .where(
            and_(
                StripeWebhookEvent.processed.is_(False),
                StripeWebhookEvent.retry_count < max_retries,
            )
        )
        .order_by(StripeWebhookEvent.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def apply_event(db: AsyncSession, event: StripeWebhookEvent, now: datetime) -> None:
    """Apply the scheduler-relevant side effects of one event."""
    if event.event_type in PAYMENT_SUCCEEDED_EVENTS:
        parent_id = _parent_id_from(event.payload)
        if parent_id:
            flagged = await campaign_manager.mark_payment_completed(db, parent_id, now)
            logger.info(
                f"webhook.payment_completed recipients={flagged}",
                extra={"parent_id": parent_id},
            )


async def execute_webhook_replay(ctx: JobContext, params: WebhookReplayParams) -> WebhookReplayResult:
    db = ctx.db
    max_retries = ctx.settings.webhook_max_retries
    events = await get_pending_events(db, params.batch_size or ctx.settings.webhook_replay_batch, max_retries)

    event_ids = [event.id for event in events]

    result = WebhookReplayResult()
    for event_id in event_ids:
        event = await db.get(StripeWebhookEvent, event_id, populate_existing=True)
        try:
            await apply_event(db, event, ctx.now())
        except Exception as exc:
            await db.rollback()
            failed_event = await db.get(StripeWebhookEvent, event_id, populate_existing=True)
            failed_event.retry_count += 1
            failed_event.last_retry_at = ctx.now()
            failed_event.error_message = str(exc)[:1000]
            await db.commit()
            result.failed += 1
            logger.warning(
                "webhook.replay_failed",
                extra={"error": str(exc)[:200], "retry_count": failed_event.retry_count,
                       "max_retries": max_retries},
            )
            continue

        event.processed = True
        event.processed_at = ctx.now()
        event.error_message = None
        await db.commit()
        result.processed += 1

    return result
