from sqlalchemy import Column, String, DateTime
import uuid

from comms_scheduler.database import Base
from comms_scheduler.utils.clock import utcnow


class Parent(Base):
    """Contact record owned by the parent-management app; read here for addressing."""
    __tablename__ = "parents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
