"""Quote domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...shared.effects import Effect
from ..contacts.schemas import Contact, ContactCreate
from ..scheduling.schemas import ActionToken


class QuoteStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_QUOTE_STATUSES = frozenset(
    {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED}
)


class QuoteCreate(ContactCreate):
    """Public quote request form payload"""

    message: str
    acceptPhone: bool = False
    acceptTerms: bool

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Please describe your project")
        return v


class QuoteUpdate(BaseModel):
    """Staff status change; blank fields are ignored"""

    status: QuoteStatus
    quoteValidUntil: Optional[date] = None
    quoteDocument: Optional[str] = None
    rejectionReason: Optional[str] = None

    def fields(self) -> dict:
        return {
            "quote_valid_until": self.quoteValidUntil,
            "quote_document": self.quoteDocument,
            "rejection_reason": self.rejectionReason,
        }


class Quote(BaseModel):
    """Quote snapshot consumed and returned by the lifecycle engine"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    contact: Contact
    message: str
    accept_phone: bool = False
    accept_terms: bool = True
    status: QuoteStatus = QuoteStatus.PENDING
    quote_valid_until: Optional[date] = None
    quote_document: Optional[str] = None
    rejection_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    created_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUOTE_STATUSES


class QuoteTransitionResult(BaseModel):
    quote: Quote
    effects: list[Effect] = Field(default_factory=list)
    tokens: list[ActionToken] = Field(default_factory=list)
