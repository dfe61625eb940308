# Database models package
from comms_scheduler.models.background_job import BackgroundJob, JobLog
from comms_scheduler.models.parent import Parent
from comms_scheduler.models.message_log import MessageLog
from comms_scheduler.models.recurring_campaign import (
    RecurringCampaign,
    RecurringRecipient,
    RecurringInstance,
    RecurringMessageLog,
)
from comms_scheduler.models.webhook_event import StripeWebhookEvent

__all__ = [
    "BackgroundJob",
    "JobLog",
    "Parent",
    "MessageLog",
    "RecurringCampaign",
    "RecurringRecipient",
    "RecurringInstance",
    "RecurringMessageLog",
    "StripeWebhookEvent",
]
