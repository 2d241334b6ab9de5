from datetime import date, timedelta

import pytest

from fieldbook.domain.appointments.repository import AppointmentRepository
from fieldbook.domain.appointments.schemas import AppointmentCreate, AppointmentStatus
from fieldbook.domain.contacts.repository import ContactRepository
from fieldbook.domain.contacts.schemas import ContactCreate
from fieldbook.domain.quotes.repository import QuoteRepository
from fieldbook.domain.quotes.schemas import QuoteCreate, QuoteStatus
from fieldbook.domain.scheduling.repository import ReminderRepository, SqlTokenStore
from fieldbook.domain.scheduling.schemas import TargetType, TokenAction
from fieldbook.domain.scheduling.token_service import TokenService
from fieldbook.errors import ConcurrentModification, InvalidSlot, NotFound, TermsNotAccepted, TokenInvalid
from fieldbook.models import Appointment as AppointmentRow
from fieldbook.models import Contact as ContactRow
from fieldbook.models import EmailActionToken
from fieldbook.services.booking_service import BookingService

from .conftest import local


def booking_form(**overrides):
    payload = {
        "firstName": "Marie",
        "lastName": "Lebon",
        "email": "Marie@Example.com",
        "phone": "+590 690 12 34 56",
        "consent": True,
        "reason": "MAINTENANCE",
        "requestedAt": local(2025, 3, 10, 9, 0),
        "timezone": "America/Guadeloupe",
    }
    payload.update(overrides)
    return AppointmentCreate(**payload)


def quote_form(**overrides):
    payload = {
        "firstName": "Marie",
        "lastName": "Lebon",
        "email": "marie@example.com",
        "message": "Heat pump for a 90m2 house",
        "acceptTerms": True,
    }
    payload.update(overrides)
    return QuoteCreate(**payload)


@pytest.fixture
def service(db_session, clock):
    return BookingService(db_session, clock=clock)


def test_contact_upsert_corrects_identity(db_session, clock):
    first = ContactRepository.upsert(
        db_session, ContactCreate(firstName="Marie", lastName="Lebon", email="marie@example.com"), clock()
    )
    second = ContactRepository.upsert(
        db_session,
        ContactCreate(firstName="Marie", lastName="Lebon-Durand", email="marie@example.com", consent=True),
        clock(),
    )

    assert first.id == second.id
    assert second.last_name == "Lebon-Durand"
    assert second.consent_at == clock()
    assert db_session.query(ContactRow).count() == 1


def test_submit_appointment_persists_aware_datetimes(service, db_session):
    result = service.submit_appointment(booking_form(), created_ip="203.0.113.9")
    stored = AppointmentRepository.get_by_id(db_session, result.appointment.id)

    assert stored.status == AppointmentStatus.PENDING
    assert stored.requested_at == local(2025, 3, 10, 9, 0)
    assert stored.requested_at.tzinfo is not None
    assert stored.contact.email == "marie@example.com"
    assert stored.contact.phone == "+590690123456"
    assert stored.created_ip == "203.0.113.9"
    assert stored.version == 1


def test_rejected_submission_writes_nothing(service, db_session):
    with pytest.raises(InvalidSlot):
        service.submit_appointment(booking_form(requestedAt=local(2025, 3, 10, 12, 0)))

    assert db_session.query(ContactRow).count() == 0


def test_lookup_by_embedded_tokens(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment

    by_confirmation = AppointmentRepository.get_by_confirmation_token(db_session, appointment.confirmation_token)
    by_cancellation = AppointmentRepository.get_by_cancellation_token(db_session, appointment.cancellation_token)

    assert by_confirmation.id == appointment.id
    assert by_cancellation.id == appointment.id
    assert AppointmentRepository.get_by_cancellation_token(db_session, "") is None


def test_update_with_stale_version_is_refused(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment
    confirmed = service.appointments.confirm_directly(appointment).appointment
    AppointmentRepository.update(db_session, confirmed)

    stale = service.appointments.reject(appointment).appointment
    with pytest.raises(ConcurrentModification):
        AppointmentRepository.update(db_session, stale)

    assert AppointmentRepository.get_by_id(db_session, appointment.id).status == AppointmentStatus.CONFIRMED


def test_apply_to_appointment_bumps_version(service):
    appointment = service.submit_appointment(booking_form()).appointment

    result = service.apply_to_appointment(appointment.id, lambda engine, a: engine.confirm_directly(a))

    assert result.appointment.status == AppointmentStatus.CONFIRMED
    assert result.appointment.version == 2


def test_apply_to_unknown_appointment(service):
    with pytest.raises(NotFound):
        service.apply_to_appointment("missing", lambda engine, a: engine.reject(a))


def test_reschedule_round_trip_through_sql_token_store(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment
    proposal = service.apply_to_appointment(
        appointment.id, lambda engine, a: engine.propose_reschedule(a, local(2025, 3, 12, 15, 0))
    )
    accept, reject = proposal.tokens

    accepted = service.apply_to_appointment(
        appointment.id, lambda engine, a: engine.accept_reschedule(a, accept.secret)
    )

    assert accepted.appointment.scheduled_at == local(2025, 3, 12, 15, 0)
    with pytest.raises(TokenInvalid):
        service.apply_to_appointment(appointment.id, lambda engine, a: engine.reject_reschedule(a, reject.secret))


def test_sql_token_store_consumes_pair_once(db_session, clock):
    tokens = TokenService(SqlTokenStore(db_session), clock=clock)
    accept, _ = tokens.mint_pair(
        TargetType.QUOTE, "quote-1", TokenAction.ACCEPT_QUOTE, TokenAction.REJECT_QUOTE
    )

    assert SqlTokenStore(db_session).consume_pair(accept.pair_id, clock()) == 2
    assert SqlTokenStore(db_session).consume_pair(accept.pair_id, clock()) == 0


def test_delete_expired_tokens(db_session, clock):
    tokens = TokenService(SqlTokenStore(db_session), clock=clock)
    tokens.mint_pair(TargetType.QUOTE, "quote-1", TokenAction.ACCEPT_QUOTE, TokenAction.REJECT_QUOTE)

    assert SqlTokenStore.delete_expired(db_session, clock()) == 0
    assert SqlTokenStore.delete_expired(db_session, clock() + timedelta(hours=73)) == 2


def test_reminder_repository_lifecycle(service, db_session, clock):
    appointment = service.submit_appointment(booking_form()).appointment
    result = service.apply_to_appointment(appointment.id, lambda engine, a: engine.confirm_directly(a))
    repo = ReminderRepository(db_session)
    repo.save(result.reminder)

    assert repo.get_active_for(appointment.id).id == result.reminder.id
    assert repo.list_due(clock()) == []

    later = result.reminder.due_at + timedelta(minutes=1)
    assert [r.id for r in repo.list_due(later)] == [result.reminder.id]
    assert repo.mark_sent(result.reminder.id, "reminder:x", later) is True
    assert repo.mark_sent(result.reminder.id, "reminder:x", later) is False
    assert repo.list_due(later) == []


def test_cancel_active_reminders(service, db_session, clock):
    appointment = service.submit_appointment(booking_form()).appointment
    result = service.apply_to_appointment(appointment.id, lambda engine, a: engine.confirm_directly(a))
    repo = ReminderRepository(db_session)
    repo.save(result.reminder)

    assert repo.cancel_active_for(appointment.id, clock()) == 1
    assert repo.get_active_for(appointment.id) is None


def test_list_upcoming_and_counts(service, clock):
    first = service.submit_appointment(booking_form()).appointment
    second = service.submit_appointment(booking_form(requestedAt=local(2025, 3, 25, 14, 0))).appointment
    service.submit_appointment(booking_form(email="other@example.com"))
    for appointment in (first, second):
        service.apply_to_appointment(appointment.id, lambda engine, a: engine.confirm_directly(a))

    upcoming = service.upcoming_appointments(days=7)
    counts = service.stats()["appointments"]

    assert [a.id for a in upcoming] == [first.id]
    assert counts["CONFIRMED"] == 2
    assert counts["PENDING"] == 1
    assert counts["total"] == 3


def test_cancellation_status_by_id(service):
    appointment = service.submit_appointment(booking_form()).appointment

    assert service.cancellation_status(appointment.id).can_cancel


def test_quote_submission_and_stats(service):
    quote = service.submit_quote(quote_form()).quote
    service.submit_quote(quote_form(email="b@example.com"))
    service.apply_to_quote(quote.id, lambda engine, q: engine.accept_by_staff(q))

    stats = service.stats()["quotes"]

    assert stats["total"] == 2
    assert stats["accepted"] == 1
    assert stats["pending"] == 1
    assert stats["conversionRate"] == "50.00"


def test_quote_stats_empty(db_session):
    assert QuoteRepository.get_stats(db_session)["conversionRate"] == "0.00"


def test_quote_without_terms_writes_nothing(service, db_session):
    with pytest.raises(TermsNotAccepted):
        service.submit_quote(quote_form(acceptTerms=False))

    assert db_session.query(ContactRow).count() == 0


def test_expire_quotes(service, db_session, clock):
    quote = service.submit_quote(quote_form()).quote
    service.apply_to_quote(quote.id, lambda engine, q: engine.transition_to(q, QuoteStatus.PROCESSING))
    service.apply_to_quote(
        quote.id,
        lambda engine, q: engine.transition_to(
            q, QuoteStatus.SENT, {"quote_valid_until": date(2025, 3, 10), "quote_document": "q.pdf"}
        ),
    )

    assert service.expire_quotes() == {"checked": 0, "expired": 0, "failed": 0}

    clock.set(local(2025, 3, 11, 9, 0))
    assert service.expire_quotes() == {"checked": 1, "expired": 1, "failed": 0}
    assert QuoteRepository.get_by_id(db_session, quote.id).status == QuoteStatus.EXPIRED


def bump_version(db_session, appointment_id):
    """Simulate another request committing a write to the appointment"""
    db_session.query(AppointmentRow).filter(AppointmentRow.id == appointment_id).update(
        {AppointmentRow.version: AppointmentRow.version + 1}, synchronize_session=False
    )
    db_session.commit()


def racing(db_session, appointment_id, operation, losses=1):
    """Wrap ``operation`` so the first ``losses`` attempts lose the optimistic race"""
    calls = {"n": 0}

    def run(engine, appointment):
        calls["n"] += 1
        if calls["n"] <= losses:
            bump_version(db_session, appointment_id)
        return operation(engine, appointment)

    return run


def test_accept_reschedule_survives_a_lost_race(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment
    accept, reject = service.apply_to_appointment(
        appointment.id, lambda engine, a: engine.propose_reschedule(a, local(2025, 3, 12, 15, 0))
    ).tokens

    result = service.apply_to_appointment(
        appointment.id,
        racing(db_session, appointment.id, lambda engine, a: engine.accept_reschedule(a, accept.secret)),
    )

    assert result.appointment.status == AppointmentStatus.CONFIRMED
    assert result.appointment.scheduled_at == local(2025, 3, 12, 15, 0)
    with pytest.raises(TokenInvalid):
        service.apply_to_appointment(appointment.id, lambda engine, a: engine.reject_reschedule(a, reject.secret))


def test_exhausted_retries_leave_the_token_pair_usable(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment
    accept, reject = service.apply_to_appointment(
        appointment.id, lambda engine, a: engine.propose_reschedule(a, local(2025, 3, 12, 15, 0))
    ).tokens

    with pytest.raises(ConcurrentModification):
        service.apply_to_appointment(
            appointment.id,
            racing(
                db_session,
                appointment.id,
                lambda engine, a: engine.accept_reschedule(a, accept.secret),
                losses=3,
            ),
        )

    assert AppointmentRepository.get_by_id(db_session, appointment.id).status == AppointmentStatus.RESCHEDULED
    assert SqlTokenStore(db_session).get_by_secret(accept.secret).consumed_at is None
    rejected = service.apply_to_appointment(
        appointment.id, lambda engine, a: engine.reject_reschedule(a, reject.secret)
    )
    assert rejected.appointment.status == AppointmentStatus.CANCELLED


def test_lost_race_on_proposal_leaves_no_orphan_tokens(service, db_session):
    appointment = service.submit_appointment(booking_form()).appointment

    service.apply_to_appointment(
        appointment.id,
        racing(
            db_session,
            appointment.id,
            lambda engine, a: engine.propose_reschedule(a, local(2025, 3, 12, 15, 0)),
        ),
    )

    tokens = db_session.query(EmailActionToken).filter(EmailActionToken.target_id == appointment.id).all()
    assert len(tokens) == 2
