from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey

from comms_scheduler.database import Base
from comms_scheduler.utils.clock import utcnow


class MessageLog(Base):
    __tablename__ = "message_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parent_id = Column(String(36), ForeignKey("parents.id"), nullable=False, index=True)
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=False)
    channel = Column(String(20), nullable=False, default="email")
    status = Column(String(20), nullable=False, default="sent")
    external_reference = Column(String(255), nullable=True)  # id returned by the delivery service
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    sent_at = Column(DateTime, nullable=False, default=utcnow)
