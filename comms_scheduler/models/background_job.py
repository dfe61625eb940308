"""
SQLAlchemy models for the background_jobs queue and its per-job log trail.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
import uuid

from comms_scheduler.database import Base
from comms_scheduler.utils.clock import utcnow


def _iso(value):
    return value.isoformat() if value else None


class BackgroundJob(Base):
    __tablename__ = "background_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Status: pending → running → completed | failed (cancelled by operators)
    status = Column(String(20), nullable=False, default="pending", index=True)
    priority = Column(Integer, nullable=False, default=5)  # lower runs first
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    current_step = Column(String(255), nullable=True)

    scheduled_for = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    parameters = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    logs = relationship("JobLog", back_populates="job", order_by="JobLog.timestamp.desc()")

    __table_args__ = (
        Index("ix_background_jobs_due", "status", "priority", "scheduled_for"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "progress": self.progress,
            "currentStep": self.current_step,
            "scheduledFor": _iso(self.scheduled_for),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "parameters": self.parameters,
            "result": self.result,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "nextRetryAt": _iso(self.next_retry_at),
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }


class JobLog(Base):
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("background_jobs.id"), nullable=False, index=True)
    level = Column(String(10), nullable=False, default="info")  # debug, info, warning, error
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    job = relationship("BackgroundJob", back_populates="logs")

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "timestamp": _iso(self.timestamp),
        }
