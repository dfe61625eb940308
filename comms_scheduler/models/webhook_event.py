"""Stripe webhook events persisted on receipt and replayed by the scheduler."""

from sqlalchemy import Column, String, Integer, Text, DateTime, Boolean, JSON
import uuid

from comms_scheduler.database import Base
from comms_scheduler.utils.clock import utcnow


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)  # event.data as received
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
