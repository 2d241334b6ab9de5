"""
Appointment reminders.

A reminder is due a fixed offset (24h by default) before the confirmed
slot. Dispatch happens in a periodic sweep rather than on push, so every
step here is idempotent: marking a reminder sent twice is a no-op and the
queue job id is derived from the reminder id.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

from ...config import REMINDER_OFFSET_HOURS
from ...models import generate_public_id
from ...shared.clock import utcnow
from .schemas import Reminder

logger = logging.getLogger(__name__)


def reminder_job_id(reminder: Reminder) -> str:
    return f"reminder:{reminder.id}"


class ReminderScheduler:
    """Derives reminders from confirmed appointments"""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        offset_hours: int = REMINDER_OFFSET_HOURS,
        id_factory: Callable[[], str] = generate_public_id,
    ):
        self.clock = clock
        self.offset = timedelta(hours=offset_hours)
        self.id_factory = id_factory

    def schedule_for(self, appointment) -> Optional[Reminder]:
        """Reminder for a CONFIRMED appointment, or None when it would already be late"""
        if appointment.status != "CONFIRMED" or appointment.scheduled_at is None:
            return None
        due_at = appointment.scheduled_at - self.offset
        if due_at <= self.clock():
            logger.info(f"⏭️ Reminder for appointment {appointment.id} skipped (due time already past)")
            return None
        return Reminder(id=self.id_factory(), appointment_id=appointment.id, due_at=due_at)

    def cancel(self, reminder: Reminder) -> Reminder:
        if reminder.cancelled_at is not None or reminder.sent_at is not None:
            return reminder
        return reminder.model_copy(update={"cancelled_at": self.clock()})

    def reschedule(
        self, existing: Optional[Reminder], appointment
    ) -> tuple[Optional[Reminder], Optional[Reminder]]:
        """Invalidate ``existing`` and derive a replacement from the new slot"""
        cancelled = self.cancel(existing) if existing else None
        return cancelled, self.schedule_for(appointment)

    def mark_sent(self, reminder: Reminder, provider_ref: Optional[str]) -> Reminder:
        """Idempotent: a reminder already sent is returned unchanged"""
        if reminder.sent_at is not None:
            return reminder
        return reminder.model_copy(update={"sent_at": self.clock(), "provider_ref": provider_ref})


class ReminderStore(Protocol):
    def list_due(self, now: datetime, limit: int) -> list[Reminder]: ...

    def mark_sent(self, reminder_id: str, provider_ref: Optional[str], now: datetime) -> bool: ...


class ReminderSweep:
    """
    One polling pass over due reminders.

    ``enqueue`` receives the reminder and returns the queue job id (or None
    when the queue already holds that job). A failure on one reminder is
    logged and the pass moves on to the next one.
    """

    def __init__(
        self,
        store: ReminderStore,
        enqueue: Callable[[Reminder], Awaitable[Optional[str]]],
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 100,
    ):
        self.store = store
        self.enqueue = enqueue
        self.clock = clock
        self.batch_size = batch_size

    async def run(self) -> dict:
        now = self.clock()
        due = self.store.list_due(now, self.batch_size)
        summary = {"due": len(due), "sent": 0, "skipped": 0, "failed": 0}

        for reminder in due:
            try:
                job_id = await self.enqueue(reminder)
                if self.store.mark_sent(reminder.id, job_id or reminder_job_id(reminder), now):
                    summary["sent"] += 1
                else:
                    # Another sweep got there first
                    summary["skipped"] += 1
            except Exception as e:
                logger.error(f"❌ Failed to dispatch reminder {reminder.id}: {str(e)}")
                summary["failed"] += 1
                continue

        if due:
            logger.info(f"📊 Reminder sweep summary: {summary}")
        return summary
