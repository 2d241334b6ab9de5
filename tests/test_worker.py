import asyncio
from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from fieldbook import worker
from fieldbook.domain.appointments.schemas import AppointmentCreate
from fieldbook.domain.quotes.schemas import QuoteCreate, QuoteStatus
from fieldbook.domain.scheduling.repository import ReminderRepository
from fieldbook.models import EmailLog
from fieldbook.services.booking_service import BookingService

from .conftest import local


class FakeSender:
    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, template, variables):
        self.sent.append((recipient, template))
        return f"re_{len(self.sent)}"


class FakeRedis:
    def __init__(self):
        self.jobs = []

    async def enqueue_job(self, function, *args, _job_id=None):
        self.jobs.append((function, args, _job_id))
        return SimpleNamespace(job_id=_job_id)


@pytest.fixture(autouse=True)
def worker_sessions(db_session, monkeypatch):
    monkeypatch.setattr(worker, "SessionLocal", sessionmaker(bind=db_session.get_bind()))


@pytest.fixture
def confirmed(db_session, clock):
    service = BookingService(db_session, clock=clock)
    form = AppointmentCreate(
        firstName="Marie",
        lastName="Lebon",
        email="marie@example.com",
        reason="DIAGNOSTIC",
        requestedAt=local(2025, 3, 10, 9, 0),
        timezone="America/Guadeloupe",
    )
    appointment = service.submit_appointment(form).appointment
    return service.apply_to_appointment(appointment.id, lambda engine, a: engine.confirm_directly(a))


def test_send_email_task_logs_the_delivery(db_session):
    ctx = {"email_sender": FakeSender(), "job_id": "job-9"}

    result = asyncio.run(
        worker.send_email_task(ctx, "a@example.com", "New quote request", "admin_quote_notification", {})
    )

    assert result == {"status": "sent", "provider_ref": "re_1"}
    log = db_session.query(EmailLog).one()
    assert log.template == "admin_quote_notification"
    assert log.meta == {"provider_ref": "re_1", "job_id": "job-9"}


def test_send_email_task_propagates_failures():
    class BrokenSender:
        def send(self, *args):
            raise RuntimeError("Email service not configured")

    with pytest.raises(RuntimeError):
        asyncio.run(worker.send_email_task({"email_sender": BrokenSender()}, "a@example.com", "Hi", "quote_sent", {}))


def test_send_reminder_task_for_confirmed_appointment(confirmed, db_session):
    sender = FakeSender()

    result = asyncio.run(
        worker.send_reminder_task({"email_sender": sender}, confirmed.reminder.id, confirmed.appointment.id)
    )

    assert result == {"status": "sent"}
    assert sender.sent == [("marie@example.com", "appointment_reminder")]
    assert db_session.query(EmailLog).one().appointment_id == confirmed.appointment.id


def test_send_reminder_task_skips_cancelled_appointment(confirmed, db_session, clock):
    BookingService(db_session, clock=clock).apply_to_appointment(
        confirmed.appointment.id, lambda engine, a: engine.cancel_by_staff(a)
    )
    sender = FakeSender()

    result = asyncio.run(worker.send_reminder_task({"email_sender": sender}, "r1", confirmed.appointment.id))

    assert result == {"status": "skipped"}
    assert sender.sent == []


def test_reminder_sweep_task_uses_deterministic_job_ids(confirmed, db_session):
    # Pretend the reminder is already due
    ReminderRepository(db_session).save(confirmed.reminder.model_copy(update={"due_at": local(2025, 3, 1, 9, 0)}))
    redis = FakeRedis()

    summary = asyncio.run(worker.reminder_sweep_task({"redis": redis}))

    assert summary["sent"] == 1
    assert redis.jobs == [
        (
            "send_reminder_task",
            (confirmed.reminder.id, confirmed.appointment.id),
            f"reminder:{confirmed.reminder.id}",
        )
    ]


def test_expire_quotes_task(db_session, clock):
    service = BookingService(db_session, clock=clock)
    quote = service.submit_quote(
        QuoteCreate(firstName="Marie", lastName="Lebon", email="marie@example.com", message="Heat pump", acceptTerms=True)
    ).quote
    service.apply_to_quote(quote.id, lambda engine, q: engine.transition_to(q, QuoteStatus.PROCESSING))
    service.apply_to_quote(
        quote.id,
        lambda engine, q: engine.transition_to(
            q, QuoteStatus.SENT, {"quote_valid_until": date(2025, 3, 10), "quote_document": "q.pdf"}
        ),
    )

    # The task runs on the real clock, long after 10 March 2025
    summary = asyncio.run(worker.expire_quotes_task({}))

    assert summary["expired"] == 1
    assert summary["tokens_deleted"] == 2
