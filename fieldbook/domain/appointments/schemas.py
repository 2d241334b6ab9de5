"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...shared.effects import Effect
from ..contacts.schemas import Contact, ContactCreate
from ..scheduling.schemas import ActionToken, Reminder


class AppointmentReason(str, Enum):
    DIAGNOSTIC = "DIAGNOSTIC"
    INSTALLATION = "INSTALLATION"
    MAINTENANCE = "MAINTENANCE"
    OTHER = "OTHER"


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    RESCHEDULED = "RESCHEDULED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED}
)


class AppointmentCreate(ContactCreate):
    """Public booking form payload"""

    reason: AppointmentReason
    reasonOther: Optional[str] = None
    message: Optional[str] = None
    requestedAt: datetime
    timezone: str = Field(min_length=1, max_length=64)


class Appointment(BaseModel):
    """Appointment snapshot consumed and returned by the lifecycle engine"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    contact: Contact
    reason: AppointmentReason
    reason_other: Optional[str] = None
    message: Optional[str] = None
    requested_at: datetime
    timezone: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    scheduled_at: Optional[datetime] = None
    proposed_at: Optional[datetime] = None
    confirmation_token: Optional[str] = None
    cancellation_token: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AdminReschedule(BaseModel):
    scheduledAt: datetime


class AdminReject(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v):
        return v.strip() or None if v else None


class TransitionResult(BaseModel):
    """New appointment state plus the side effects the caller must run"""

    appointment: Appointment
    effects: list[Effect] = Field(default_factory=list)
    tokens: list[ActionToken] = Field(default_factory=list)
    reminder: Optional[Reminder] = None


class CancellationStatus(BaseModel):
    can_cancel: bool
    remaining_hours: Optional[float] = None
    message: str
