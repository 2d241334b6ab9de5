"""
Booking Service
Read → transition → write-if-unchanged around the lifecycle engines.

The engines are pure; this layer owns the session, the optimistic retry
loop and the wiring of SQL-backed collaborators. Effects are returned to
the caller, which dispatches them once the new state is committed.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import BUSINESS_TIMEZONE
from ..domain.appointments.engine import AppointmentEngine
from ..domain.appointments.repository import AppointmentRepository
from ..domain.appointments.schemas import Appointment, AppointmentCreate, TransitionResult
from ..domain.contacts.repository import ContactRepository
from ..domain.contacts.schemas import Contact, ContactCreate
from ..domain.quotes.engine import QuoteEngine
from ..domain.quotes.repository import QuoteRepository
from ..domain.quotes.schemas import Quote, QuoteCreate, QuoteTransitionResult
from ..domain.scheduling.reminders import ReminderScheduler
from ..domain.scheduling.repository import SqlTokenStore
from ..domain.scheduling.time_windows import to_local
from ..domain.scheduling.token_service import TokenService
from ..errors import NotFound
from ..shared.clock import utcnow
from ..shared.persistence import with_retry

logger = logging.getLogger(__name__)


def _provisional_contact(data: ContactCreate) -> Contact:
    return Contact(
        id="",
        first_name=data.firstName,
        last_name=data.lastName,
        email=data.email,
        phone=data.phone,
    )


def build_token_service(db: Session, clock: Callable[[], datetime] = utcnow) -> TokenService:
    return TokenService(SqlTokenStore(db), clock=clock)


def build_appointment_engine(db: Session, clock: Callable[[], datetime] = utcnow) -> AppointmentEngine:
    return AppointmentEngine(
        tokens=build_token_service(db, clock),
        reminders=ReminderScheduler(clock=clock),
        clock=clock,
    )


def build_quote_engine(db: Session, clock: Callable[[], datetime] = utcnow) -> QuoteEngine:
    return QuoteEngine(tokens=build_token_service(db, clock), clock=clock)


class BookingService:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        appointment_engine: Optional[AppointmentEngine] = None,
        quote_engine: Optional[QuoteEngine] = None,
    ):
        self.db = db
        self.clock = clock
        self.appointments = appointment_engine or build_appointment_engine(db, clock)
        self.quotes = quote_engine or build_quote_engine(db, clock)

    # Appointments

    def submit_appointment(self, data: AppointmentCreate, created_ip: Optional[str] = None) -> TransitionResult:
        # The engine validates against a provisional contact so a rejected
        # request never writes the contact row
        result = self.appointments.submit(
            _provisional_contact(data),
            data.requestedAt,
            data.timezone,
            data.reason,
            reason_other=data.reasonOther,
            message=data.message,
            created_ip=created_ip,
        )
        contact = ContactRepository.upsert(self.db, data, self.clock())
        appointment = result.appointment.model_copy(update={"contact": contact})
        stored = AppointmentRepository.create(self.db, appointment)
        return result.model_copy(update={"appointment": stored})

    def apply_to_appointment(
        self,
        appointment_id: str,
        operation: Callable[[AppointmentEngine, Appointment], TransitionResult],
    ) -> TransitionResult:
        """
        Run one engine operation against the latest stored state.

        Example:
            service.apply_to_appointment(id, lambda e, a: e.reject(a, "Fully booked"))
        """

        def attempt() -> TransitionResult:
            appointment = AppointmentRepository.get_by_id(self.db, appointment_id)
            if appointment is None:
                raise NotFound(f"Appointment {appointment_id} not found")
            result = operation(self.appointments, appointment)
            if result.appointment == appointment:
                return result
            stored = AppointmentRepository.update(self.db, result.appointment)
            return result.model_copy(update={"appointment": stored})

        return self._retrying(attempt)

    def cancellation_status(self, appointment_id: str):
        appointment = AppointmentRepository.get_by_id(self.db, appointment_id)
        if appointment is None:
            raise NotFound(f"Appointment {appointment_id} not found")
        return self.appointments.cancellation_status(appointment)

    def upcoming_appointments(self, days: int = 7) -> list[Appointment]:
        return AppointmentRepository.list_upcoming(self.db, self.clock(), days)

    # Quotes

    def submit_quote(self, data: QuoteCreate, created_ip: Optional[str] = None) -> QuoteTransitionResult:
        result = self.quotes.submit(
            _provisional_contact(data),
            data.message,
            data.acceptPhone,
            data.acceptTerms,
            created_ip=created_ip,
        )
        contact = ContactRepository.upsert(self.db, data, self.clock())
        stored = QuoteRepository.create(self.db, result.quote.model_copy(update={"contact": contact}))
        return result.model_copy(update={"quote": stored})

    def apply_to_quote(
        self,
        quote_id: str,
        operation: Callable[[QuoteEngine, Quote], QuoteTransitionResult],
    ) -> QuoteTransitionResult:
        def attempt() -> QuoteTransitionResult:
            quote = QuoteRepository.get_by_id(self.db, quote_id)
            if quote is None:
                raise NotFound(f"Quote {quote_id} not found")
            result = operation(self.quotes, quote)
            stored = QuoteRepository.update(self.db, result.quote)
            return result.model_copy(update={"quote": stored})

        return self._retrying(attempt)

    def expire_quotes(self) -> dict:
        """Move every SENT quote past its validity date to EXPIRED"""
        today = to_local(self.clock(), BUSINESS_TIMEZONE).date()
        summary = {"checked": 0, "expired": 0, "failed": 0}
        for quote in QuoteRepository.list_expirable(self.db, today):
            summary["checked"] += 1
            try:
                self.apply_to_quote(quote.id, lambda engine, q: engine.expire(q, today))
                summary["expired"] += 1
            except Exception as e:
                logger.error(f"❌ Failed to expire quote {quote.id}: {str(e)}")
                summary["failed"] += 1
                continue
        return summary

    def _retrying(self, attempt: Callable):
        """
        Run ``attempt`` under the optimistic retry loop.

        Token writes made by the engine are only flushed; a failed attempt
        rolls them back so a retry sees the tokens untouched.
        """

        def guarded():
            try:
                return attempt()
            except Exception:
                self.db.rollback()
                raise

        return with_retry(guarded)

    # Stats

    def stats(self) -> dict:
        return {
            "appointments": AppointmentRepository.count_by_status(self.db),
            "quotes": QuoteRepository.get_stats(self.db),
        }
