"""Scheduling schemas - action tokens and reminders"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TargetType(str, Enum):
    APPOINTMENT = "APPOINTMENT"
    QUOTE = "QUOTE"


class TokenAction(str, Enum):
    ACCEPT_RESCHEDULE = "ACCEPT_RESCHEDULE"
    REJECT_RESCHEDULE = "REJECT_RESCHEDULE"
    ACCEPT_QUOTE = "ACCEPT_QUOTE"
    REJECT_QUOTE = "REJECT_QUOTE"


class ActionToken(BaseModel):
    """Single-use authorization for one recipient action"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    target_type: TargetType
    target_id: str
    action: TokenAction
    secret: str
    pair_id: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class Reminder(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    due_at: datetime
    sent_at: Optional[datetime] = None
    provider_ref: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.sent_at is None and self.cancelled_at is None
