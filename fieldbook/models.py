import uuid
from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Stores instants in UTC and always hands back tz-aware datetimes.

    Some backends (sqlite) drop tzinfo on the way out; the engines compare
    instants across zones, so naive values must never leak out of the ORM.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime cannot be stored as an instant")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(50), nullable=True)
    consent_at = Column(UTCDateTime, nullable=True)  # When the requester accepted the terms
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="contact")
    quotes = relationship("Quote", back_populates="contact")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)

    # Request details
    reason = Column(String(20), nullable=False)  # DIAGNOSTIC, INSTALLATION, MAINTENANCE, OTHER
    reason_other = Column(String(500), nullable=True)  # Only when reason == OTHER
    message = Column(Text, nullable=True)
    requested_at = Column(UTCDateTime, nullable=False)  # Customer's preferred slot
    timezone = Column(String(64), nullable=False)  # IANA zone from the requester's browser

    # Status workflow: PENDING → CONFIRMED/RESCHEDULED/REJECTED/CANCELLED
    # RESCHEDULED → CONFIRMED/CANCELLED, CONFIRMED → COMPLETED/CANCELLED
    status = Column(String(20), default="PENDING", nullable=False, index=True)
    scheduled_at = Column(UTCDateTime, nullable=True, index=True)  # Confirmed slot
    proposed_at = Column(UTCDateTime, nullable=True)  # Slot offered by a pending reschedule

    # Single-use secrets embedded in the client emails
    confirmation_token = Column(String(128), unique=True, nullable=True, index=True)
    cancellation_token = Column(String(128), unique=True, nullable=True, index=True)

    confirmed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    created_ip = Column(String(45), nullable=True)  # Abuse tracking
    version = Column(Integer, default=1, nullable=False)  # Optimistic concurrency
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    contact = relationship("Contact", back_populates="appointments")
    reminders = relationship("Reminder", back_populates="appointment")


class Quote(Base):
    __tablename__ = "quotes"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)  # Project description
    accept_phone = Column(Boolean, default=False, nullable=False)
    accept_terms = Column(Boolean, default=False, nullable=False)

    # Status workflow: PENDING → PROCESSING → SENT → ACCEPTED/REJECTED/EXPIRED
    status = Column(String(20), default="PENDING", nullable=False, index=True)
    quote_valid_until = Column(Date, nullable=True)
    quote_document = Column(String(500), nullable=True)  # Storage key or URL of the quote PDF
    rejection_reason = Column(String(1000), nullable=True)

    processed_at = Column(UTCDateTime, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    responded_at = Column(UTCDateTime, nullable=True)

    created_ip = Column(String(45), nullable=True)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    contact = relationship("Contact", back_populates="quotes")


class EmailActionToken(Base):
    """Short-lived single-use authorization for one recipient action"""

    __tablename__ = "email_action_tokens"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    target_type = Column(String(20), nullable=False)  # APPOINTMENT, QUOTE
    target_id = Column(String(36), nullable=False, index=True)
    action = Column(String(30), nullable=False)  # ACCEPT_RESCHEDULE, REJECT_RESCHEDULE, ...
    secret = Column(String(128), unique=True, nullable=False, index=True)
    pair_id = Column(String(36), nullable=False, index=True)  # Shared by sibling tokens
    expires_at = Column(UTCDateTime, nullable=False)
    consumed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=False, index=True)
    due_at = Column(UTCDateTime, nullable=False, index=True)
    sent_at = Column(UTCDateTime, nullable=True)
    provider_ref = Column(String(255), nullable=True)  # Queue job id once enqueued
    cancelled_at = Column(UTCDateTime, nullable=True)  # Superseded or appointment cancelled
    created_at = Column(UTCDateTime, server_default=func.now())

    appointment = relationship("Appointment", back_populates="reminders")


class EmailLog(Base):
    """Append-only audit of dispatched emails"""

    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    template = Column(String(100), nullable=False)
    sent_at = Column(UTCDateTime, server_default=func.now())
    meta = Column(JSON, nullable=True)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=True, index=True)
    quote_id = Column(String(36), ForeignKey("quotes.id"), nullable=True, index=True)
