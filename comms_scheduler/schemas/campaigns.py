from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from comms_scheduler.schemas.jobs import CamelModel


class IntervalKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class StopCondition(str, Enum):
    PAYMENT_COMPLETION = "payment_completion"
    USER_RESPONSE = "user_response"
    MAX_MESSAGES = "max_messages"


class InstanceStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"


class OutcomeStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class TargetAudience(str, Enum):
    ALL = "all"
    SPECIFIC_PARENTS = "specific_parents"


class CampaignCreate(CamelModel):
    name: str = Field(min_length=1)
    body: str = Field(min_length=1)
    interval: IntervalKind
    interval_value: int = Field(default=1, ge=1)
    subject: Optional[str] = None
    channel: str = "email"
    start_date: datetime
    end_date: Optional[datetime] = None
    max_messages: Optional[int] = Field(default=None, ge=1)
    stop_conditions: List[StopCondition] = Field(default_factory=list)
    target_audience: TargetAudience = TargetAudience.ALL
    audience_filter: Optional[Dict[str, Any]] = None


class PauseRequest(CamelModel):
    reason: Optional[str] = None
