"""
Side-effect descriptions returned by the lifecycle engines.

Engines never send email or touch the queue. They describe what should
happen and the caller dispatches it after persisting the new state.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EffectType(str, Enum):
    SEND_EMAIL = "send_email"
    SCHEDULE_REMINDER = "schedule_reminder"
    CANCEL_REMINDER = "cancel_reminder"


# Template ids understood by the email renderer, with their subjects
EMAIL_SUBJECTS = {
    "appointment_request": "We received your appointment request",
    "admin_appointment_notification": "New appointment request",
    "appointment_confirmation": "Your appointment is confirmed",
    "appointment_cancelled": "Your appointment has been cancelled",
    "admin_appointment_cancelled": "Appointment cancelled by the client",
    "appointment_rejected": "About your appointment request",
    "reschedule_proposal": "A new time is proposed for your appointment",
    "appointment_reminder": "Appointment reminder",
    "quote_request": "We received your quote request",
    "admin_quote_notification": "New quote request",
    "quote_sent": "Your quote is ready",
    "quote_accepted": "Your quote has been accepted",
    "quote_rejected": "About your quote",
    "admin_quote_response": "A client responded to a quote",
}


class Effect(BaseModel):
    type: EffectType
    template: Optional[str] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    appointment_id: Optional[str] = None
    quote_id: Optional[str] = None
    payload: Any = None

    @classmethod
    def email(cls, template: str, recipient: str, **variables) -> "Effect":
        return cls(
            type=EffectType.SEND_EMAIL,
            template=template,
            recipient=recipient,
            subject=EMAIL_SUBJECTS.get(template, template),
            variables=variables,
            appointment_id=variables.get("appointment_id"),
            quote_id=variables.get("quote_id"),
        )

    @classmethod
    def schedule_reminder(cls, reminder) -> "Effect":
        return cls(
            type=EffectType.SCHEDULE_REMINDER,
            appointment_id=reminder.appointment_id,
            payload=reminder,
        )

    @classmethod
    def cancel_reminder(cls, appointment_id: str) -> "Effect":
        return cls(type=EffectType.CANCEL_REMINDER, appointment_id=appointment_id)


def emails(effects: list[Effect]) -> list[Effect]:
    return [e for e in effects if e.type == EffectType.SEND_EMAIL]


def templates(effects: list[Effect]) -> list[str]:
    """Template ids of the email effects, in order"""
    return [e.template for e in emails(effects)]
