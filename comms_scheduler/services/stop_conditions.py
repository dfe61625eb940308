"""Per-recipient stop rules for recurring campaigns."""
from typing import Optional

from comms_scheduler.models.recurring_campaign import RecurringCampaign, RecurringRecipient
from comms_scheduler.schemas.campaigns import StopCondition


def evaluate_stop_conditions(
    recipient: RecurringRecipient,
    campaign: RecurringCampaign,
) -> Optional[StopCondition]:
    """
    Return the first configured condition the recipient meets, or None.

    Only conditions listed on the campaign are checked, in the order
    payment_completion, user_response, max_messages.
    """
    configured = set(campaign.stop_conditions or [])

    if StopCondition.PAYMENT_COMPLETION.value in configured and recipient.payment_completed:
        return StopCondition.PAYMENT_COMPLETION

    if StopCondition.USER_RESPONSE.value in configured and recipient.response_received:
        return StopCondition.USER_RESPONSE

    if (
        StopCondition.MAX_MESSAGES.value in configured
        and campaign.max_messages is not None
        and (recipient.messages_sent or 0) >= campaign.max_messages
    ):
        return StopCondition.MAX_MESSAGES

    return None


def should_stop(recipient: RecurringRecipient, campaign: RecurringCampaign) -> bool:
    return evaluate_stop_conditions(recipient, campaign) is not None
