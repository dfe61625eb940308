"""
Recurring message campaigns: the campaign itself, its per-parent recipients,
its scheduled firings (instances) and the per-recipient outcome of each firing.
"""
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Boolean, JSON, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import uuid

from comms_scheduler.database import Base
from comms_scheduler.utils.clock import utcnow


def _iso(value):
    return value.isoformat() if value else None


class RecurringCampaign(Base):
    __tablename__ = "recurring_campaigns"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    channel = Column(String(20), nullable=False, default="email")  # email, sms
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=False)

    interval = Column(String(20), nullable=False)  # daily, weekly, monthly, custom
    interval_value = Column(Integer, nullable=False, default=1)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    max_messages = Column(Integer, nullable=True)
    stop_conditions = Column(JSON, nullable=False, default=list)

    target_audience = Column(String(50), nullable=False, default="all")
    audience_filter = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    paused_at = Column(DateTime, nullable=True)
    paused_reason = Column(String(500), nullable=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    recipients = relationship("RecurringRecipient", back_populates="campaign")
    instances = relationship(
        "RecurringInstance", back_populates="campaign", order_by="RecurringInstance.scheduled_for"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "channel": self.channel,
            "subject": self.subject,
            "body": self.body,
            "interval": self.interval,
            "intervalValue": self.interval_value,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "maxMessages": self.max_messages,
            "stopConditions": self.stop_conditions or [],
            "targetAudience": self.target_audience,
            "isActive": self.is_active,
            "pausedAt": _iso(self.paused_at),
            "pausedReason": self.paused_reason,
            "createdAt": _iso(self.created_at),
        }


class RecurringRecipient(Base):
    __tablename__ = "recurring_recipients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(String(36), ForeignKey("recurring_campaigns.id"), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("parents.id"), nullable=False, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    messages_sent = Column(Integer, nullable=False, default=0)
    last_message_sent = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)
    stop_reason = Column(String(50), nullable=True)

    payment_completed = Column(Boolean, nullable=False, default=False)
    payment_completed_at = Column(DateTime, nullable=True)
    response_received = Column(Boolean, nullable=False, default=False)
    response_received_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    campaign = relationship("RecurringCampaign", back_populates="recipients")
    parent = relationship("Parent")

    __table_args__ = (
        UniqueConstraint("campaign_id", "parent_id", name="uq_recurring_recipient"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "campaignId": self.campaign_id,
            "parentId": self.parent_id,
            "isActive": self.is_active,
            "messagesSent": self.messages_sent,
            "lastMessageSent": _iso(self.last_message_sent),
            "stoppedAt": _iso(self.stopped_at),
            "stopReason": self.stop_reason,
            "paymentCompleted": self.payment_completed,
            "responseReceived": self.response_received,
        }


class RecurringInstance(Base):
    __tablename__ = "recurring_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(String(36), ForeignKey("recurring_campaigns.id"), nullable=False, index=True)
    scheduled_for = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="scheduled", index=True)  # scheduled, sent, cancelled
    actual_sent_at = Column(DateTime, nullable=True)
    recipient_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    campaign = relationship("RecurringCampaign", back_populates="instances")
    outcomes = relationship("RecurringMessageLog", back_populates="instance")

    def to_dict(self):
        return {
            "id": self.id,
            "campaignId": self.campaign_id,
            "scheduledFor": _iso(self.scheduled_for),
            "status": self.status,
            "actualSentAt": _iso(self.actual_sent_at),
            "recipientCount": self.recipient_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
        }


class RecurringMessageLog(Base):
    """Delivery outcome of one instance for one recipient."""
    __tablename__ = "recurring_message_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("recurring_instances.id"), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("parents.id"), nullable=False, index=True)
    message_log_id = Column(Integer, ForeignKey("message_logs.id"), nullable=True)
    status = Column(String(20), nullable=False)  # sent, failed, skipped
    reason = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    instance = relationship("RecurringInstance", back_populates="outcomes")
