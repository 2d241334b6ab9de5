import asyncio
from datetime import timedelta

from fieldbook.domain.scheduling.reminders import ReminderSweep, reminder_job_id
from fieldbook.domain.scheduling.schemas import Reminder

from .conftest import local


def confirmed_appointment(engine, contact, when=None):
    pending = engine.submit(contact, local(2025, 3, 10, 9, 0), "America/Guadeloupe", "DIAGNOSTIC").appointment
    return engine.confirm_directly(pending, when).appointment


def test_schedule_for_confirmed_appointment(appointment_engine, reminders, contact):
    appointment = confirmed_appointment(appointment_engine, contact)

    reminder = reminders.schedule_for(appointment)

    assert reminder.appointment_id == appointment.id
    assert reminder.due_at == appointment.scheduled_at - timedelta(hours=24)
    assert reminder.is_active


def test_no_reminder_for_pending(appointment_engine, reminders, contact):
    pending = appointment_engine.submit(
        contact, local(2025, 3, 10, 9, 0), "America/Guadeloupe", "DIAGNOSTIC"
    ).appointment

    assert reminders.schedule_for(pending) is None


def test_no_reminder_when_due_time_already_passed(appointment_engine, reminders, contact, clock):
    appointment = confirmed_appointment(appointment_engine, contact)
    clock.set(appointment.scheduled_at - timedelta(hours=2))

    assert reminders.schedule_for(appointment) is None


def test_reschedule_cancels_existing_and_derives_new(appointment_engine, reminders, contact):
    appointment = confirmed_appointment(appointment_engine, contact)
    existing = reminders.schedule_for(appointment)
    moved = appointment.model_copy(update={"scheduled_at": local(2025, 3, 12, 15, 0)})

    cancelled, replacement = reminders.reschedule(existing, moved)

    assert cancelled.cancelled_at is not None
    assert not cancelled.is_active
    assert replacement.due_at == local(2025, 3, 11, 15, 0)


def test_mark_sent_is_idempotent(appointment_engine, reminders, contact, clock):
    reminder = reminders.schedule_for(confirmed_appointment(appointment_engine, contact))

    sent = reminders.mark_sent(reminder, "job-1")
    clock.advance(minutes=5)
    again = reminders.mark_sent(sent, "job-2")

    assert again == sent
    assert again.provider_ref == "job-1"


class FakeReminderStore:
    def __init__(self, reminders):
        self.reminders = {r.id: r for r in reminders}

    def list_due(self, now, limit):
        due = [r for r in self.reminders.values() if r.is_active and r.due_at <= now]
        return due[:limit]

    def mark_sent(self, reminder_id, provider_ref, now):
        reminder = self.reminders[reminder_id]
        if reminder.sent_at is not None:
            return False
        self.reminders[reminder_id] = reminder.model_copy(update={"sent_at": now, "provider_ref": provider_ref})
        return True


def make_reminder(reminder_id, due_at):
    return Reminder(id=reminder_id, appointment_id=f"appt-{reminder_id}", due_at=due_at)


def test_sweep_enqueues_due_reminders_with_deterministic_job_ids(clock):
    store = FakeReminderStore(
        [
            make_reminder("r1", clock() - timedelta(minutes=1)),
            make_reminder("r2", clock() + timedelta(hours=1)),
        ]
    )
    enqueued = []

    async def enqueue(reminder):
        enqueued.append(reminder_job_id(reminder))
        return reminder_job_id(reminder)

    summary = asyncio.run(ReminderSweep(store, enqueue, clock=clock).run())

    assert enqueued == ["reminder:r1"]
    assert summary == {"due": 1, "sent": 1, "skipped": 0, "failed": 0}
    assert store.reminders["r1"].provider_ref == "reminder:r1"


def test_sweep_continues_after_a_failure(clock):
    store = FakeReminderStore(
        [make_reminder(rid, clock() - timedelta(minutes=1)) for rid in ("r1", "r2", "r3")]
    )

    async def enqueue(reminder):
        if reminder.id == "r2":
            raise ConnectionError("redis down")
        return None

    summary = asyncio.run(ReminderSweep(store, enqueue, clock=clock).run())

    assert summary == {"due": 3, "sent": 2, "skipped": 0, "failed": 1}
    assert store.reminders["r2"].is_active


def test_second_sweep_is_a_no_op(clock):
    store = FakeReminderStore([make_reminder("r1", clock() - timedelta(minutes=1))])

    async def enqueue(reminder):
        return reminder_job_id(reminder)

    sweep = ReminderSweep(store, enqueue, clock=clock)
    asyncio.run(sweep.run())
    summary = asyncio.run(sweep.run())

    assert summary == {"due": 0, "sent": 0, "skipped": 0, "failed": 0}
