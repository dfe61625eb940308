"""
Campaign dispatcher, the `recurring_messages` job handler.

Each due instance is claimed (scheduled → sent) before it fans out, so two
jobs running side by side never send the same instance. A recipient's
failure is recorded as a `failed` outcome and never aborts the instance or
the job; the campaign's next instance is scheduled once the fan-out ends.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from comms_scheduler.models.message_log import MessageLog
from comms_scheduler.models.parent import Parent
from comms_scheduler.models.recurring_campaign import (
    RecurringCampaign,
    RecurringInstance,
    RecurringMessageLog,
    RecurringRecipient,
)
from comms_scheduler.schemas.campaigns import InstanceStatus, OutcomeStatus
from comms_scheduler.schemas.jobs import RecurringMessagesParams, RecurringMessagesResult
from comms_scheduler.services import campaign_manager, recurrence
from comms_scheduler.services.delivery import DeliveryClient, DeliveryError
from comms_scheduler.services.job_runner import JobContext
from comms_scheduler.services.stop_conditions import evaluate_stop_conditions
from comms_scheduler.services.templating import build_variables, render_template
from comms_scheduler.utils import metrics
from comms_scheduler.utils.logger import get_logger

logger = get_logger("dispatcher")


@dataclass
class InstanceOutcome:
    claimed: bool = True
    cancelled: bool = False
    sent: int = 0
    failed: int = 0
    skipped: int = 0


def _address_for(parent: Parent, channel: str) -> str:
    address = parent.phone if channel == "sms" else parent.email
    if not address:
        raise DeliveryError(f"Parent has no {'phone number' if channel == 'sms' else 'email address'}")
    return address


async def _active_recipient_ids(db: AsyncSession, campaign_id: str) -> List[int]:
    result = await db.execute(
        select(RecurringRecipient.id)
        .where(
            and_(
                RecurringRecipient.campaign_id == campaign_id,
                RecurringRecipient.is_active.is_(True),
            )
        )
        .order_by(RecurringRecipient.id)
    )
    return list(result.scalars().all())


async def _load_recipient(db: AsyncSession, recipient_id: int) -> RecurringRecipient:
    # Fresh read: flags may have been set by a reply or payment since the last send
    return await db.get(
        RecurringRecipient,
        recipient_id,
        options=[selectinload(RecurringRecipient.parent)],
        populate_existing=True,
    )


async def _send(
    campaign: RecurringCampaign,
    recipient: RecurringRecipient,
    delivery: DeliveryClient,
    program_name: str,
):
    """Render and hand one message to the delivery service. Returns (subject, body, result)."""
    parent = recipient.parent
    variables = build_variables(parent, program_name)
    subject = render_template(campaign.subject, variables) or f"Message from {campaign.name}"
    body = render_template(campaign.body, variables)

    sent = await delivery.send(_address_for(parent, campaign.channel), subject, body, campaign.channel)
    if not sent.success:
        raise DeliveryError("Delivery service did not accept the message")
    return subject, body, sent


async def _record_sent(
    db: AsyncSession,
    campaign: RecurringCampaign,
    instance_id: int,
    recipient: RecurringRecipient,
    subject: str,
    body: str,
    reference,
    now: datetime,
) -> None:
    message = MessageLog(
        parent_id=recipient.parent_id,
        subject=subject,
        body=body,
        channel=campaign.channel,
        status="sent",
        external_reference=reference,
        meta={"source": "recurring_message", "recurringMessageId": campaign.id, "instanceId": instance_id},
        sent_at=now,
    )
    db.add(message)
    await db.flush()

    db.add(RecurringMessageLog(
        instance_id=instance_id,
        parent_id=recipient.parent_id,
        message_log_id=message.id,
        status=OutcomeStatus.SENT.value,
        sent_at=now,
        created_at=now,
    ))
    recipient.messages_sent = (recipient.messages_sent or 0) + 1
    recipient.last_message_sent = now
    await db.commit()


async def _record_skipped(db: AsyncSession, instance_id: int, recipient: RecurringRecipient,
                          reason: str, now: datetime) -> None:
    recipient.is_active = False
    recipient.stopped_at = now
    recipient.stop_reason = reason
    db.add(RecurringMessageLog(
        instance_id=instance_id,
        parent_id=recipient.parent_id,
        status=OutcomeStatus.SKIPPED.value,
        reason=reason,
        created_at=now,
    ))
    await db.commit()


async def dispatch_instance(
    db: AsyncSession,
    instance: RecurringInstance,
    delivery: DeliveryClient,
    program_name: str,
    now: datetime,
) -> InstanceOutcome:
    """Fire one due instance and schedule the campaign's next one."""
    instance_id, campaign_id = instance.id, instance.campaign_id
    campaign = await db.get(RecurringCampaign, campaign_id, populate_existing=True)

    if campaign is None or not campaign.is_active:
        if not await campaign_manager.claim_instance(db, instance_id, InstanceStatus.CANCELLED.value):
            return InstanceOutcome(claimed=False)
        logger.info("campaign.instance_cancelled", extra={"campaign_id": campaign_id,
                                                          "instance_id": instance_id})
        return InstanceOutcome(cancelled=True)

    recipient_ids = await _active_recipient_ids(db, campaign_id)
    claimed = await campaign_manager.claim_instance(
        db, instance_id, InstanceStatus.SENT.value,
        actual_sent_at=now, recipient_count=len(recipient_ids),
    )
    if not claimed:
        logger.info("campaign.instance_already_claimed", extra={"campaign_id": campaign_id,
                                                                "instance_id": instance_id})
        return InstanceOutcome(claimed=False)

    outcome = InstanceOutcome()
    for recipient_id in recipient_ids:
        recipient = await _load_recipient(db, recipient_id)
        parent_id = recipient.parent_id
        try:
            stop = evaluate_stop_conditions(recipient, campaign)
            if stop is not None:
                await _record_skipped(db, instance_id, recipient, stop.value, now)
                outcome.skipped += 1
                logger.info("campaign.recipient_stopped",
                            extra={"campaign_id": campaign_id, "recipient_id": recipient_id,
                                   "stop_reason": stop.value})
                continue

            subject, body, sent = await _send(campaign, recipient, delivery, program_name)
            await _record_sent(db, campaign, instance_id, recipient, subject, body, sent.reference, now)
            outcome.sent += 1
        except Exception as exc:
            # Rollback expires every loaded object; reload the campaign before the next recipient
            await db.rollback()
            await db.refresh(campaign)
            reason = str(exc) or type(exc).__name__
            logger.warning(
                "campaign.delivery_failed",
                extra={"campaign_id": campaign_id, "instance_id": instance_id,
                       "parent_id": parent_id, "error": reason[:200]},
            )
            db.add(RecurringMessageLog(
                instance_id=instance_id,
                parent_id=parent_id,
                status=OutcomeStatus.FAILED.value,
                reason=reason[:1000],
                created_at=now,
            ))
            await db.commit()
            outcome.failed += 1

    await db.execute(
        update(RecurringInstance)
        .where(RecurringInstance.id == instance_id)
        .values(success_count=outcome.sent, failure_count=outcome.failed)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    metrics.inc("deliveries.sent", outcome.sent)
    metrics.inc("deliveries.failed", outcome.failed)
    metrics.inc("deliveries.skipped", outcome.skipped)
    logger.info(
        "campaign.instance_sent",
        extra={"campaign_id": campaign_id, "instance_id": instance_id, "sent": outcome.sent,
               "failed": outcome.failed, "skipped": outcome.skipped},
    )

    await recurrence.schedule_next(db, campaign_id, now=now)
    return outcome


async def execute_recurring_messages(ctx: JobContext, params: RecurringMessagesParams) -> RecurringMessagesResult:
    now = ctx.now()
    limit = params.instance_limit or ctx.settings.campaign_instance_batch
    due_ids = [instance.id for instance in await campaign_manager.find_due_instances(ctx.db, now, limit)]

    result = RecurringMessagesResult()
    for index, instance_id in enumerate(due_ids, start=1):
        instance = await ctx.db.get(RecurringInstance, instance_id, populate_existing=True)
        outcome = await dispatch_instance(ctx.db, instance, ctx.delivery, ctx.settings.program_name, now)
        if not outcome.claimed:
            continue
        result.instances_processed += 1
        if outcome.cancelled:
            result.instances_cancelled += 1
        result.total_sent += outcome.sent
        result.total_failed += outcome.failed
        result.total_skipped += outcome.skipped
        await ctx.progress(index * 100 // len(due_ids), f"Processed instance {instance_id}")

    return result
