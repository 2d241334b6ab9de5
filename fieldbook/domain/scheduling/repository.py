"""Scheduling repository - action tokens and reminders in the database"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import EmailActionToken
from ...models import Reminder as ReminderRow
from ...shared.persistence import column_values
from .schemas import ActionToken, Reminder, TargetType


class SqlTokenStore:
    """Token store backed by ``email_action_tokens``.

    Consumption is a single conditional UPDATE so two concurrent requests
    presenting the same link cannot both observe "unconsumed".

    Writes are flushed, not committed: they belong to the caller's
    transaction and commit or roll back with the version-checked entity
    write in ``update_if_unchanged``.
    """

    def __init__(self, db: Session):
        self.db = db

    def add(self, token: ActionToken) -> None:
        self.db.add(EmailActionToken(**column_values(token)))
        self.db.flush()

    def get_by_secret(self, secret: str) -> Optional[ActionToken]:
        row = (
            self.db.query(EmailActionToken)
            .filter(EmailActionToken.secret == secret)
            .populate_existing()
            .first()
        )
        return ActionToken.model_validate(row) if row else None

    def consume_pair(self, pair_id: str, now: datetime) -> int:
        changed = (
            self.db.query(EmailActionToken)
            .filter(EmailActionToken.pair_id == pair_id, EmailActionToken.consumed_at.is_(None))
            .update({EmailActionToken.consumed_at: now}, synchronize_session=False)
        )
        self.db.flush()
        return changed

    def revoke_for_target(self, target_type: TargetType, target_id: str, now: datetime) -> int:
        changed = (
            self.db.query(EmailActionToken)
            .filter(
                EmailActionToken.target_type == target_type.value,
                EmailActionToken.target_id == target_id,
                EmailActionToken.consumed_at.is_(None),
            )
            .update({EmailActionToken.consumed_at: now}, synchronize_session=False)
        )
        self.db.flush()
        return changed

    @staticmethod
    def delete_expired(db: Session, now: datetime) -> int:
        """Housekeeping: drop tokens that can no longer be used"""
        deleted = (
            db.query(EmailActionToken)
            .filter(EmailActionToken.expires_at < now)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


class ReminderRepository:
    """Repository for reminder database operations"""

    def __init__(self, db: Session):
        self.db = db

    def save(self, reminder: Reminder) -> Reminder:
        row = self.db.query(ReminderRow).filter(ReminderRow.id == reminder.id).first()
        if row is None:
            row = ReminderRow(**reminder.model_dump())
            self.db.add(row)
        else:
            for key, value in reminder.model_dump(exclude={"id"}).items():
                setattr(row, key, value)
        self.db.commit()
        self.db.refresh(row)
        return Reminder.model_validate(row)

    def get_active_for(self, appointment_id: str) -> Optional[Reminder]:
        row = (
            self.db.query(ReminderRow)
            .filter(
                ReminderRow.appointment_id == appointment_id,
                ReminderRow.sent_at.is_(None),
                ReminderRow.cancelled_at.is_(None),
            )
            .order_by(ReminderRow.due_at.desc())
            .first()
        )
        return Reminder.model_validate(row) if row else None

    def cancel_active_for(self, appointment_id: str, now: datetime) -> int:
        changed = (
            self.db.query(ReminderRow)
            .filter(
                ReminderRow.appointment_id == appointment_id,
                ReminderRow.sent_at.is_(None),
                ReminderRow.cancelled_at.is_(None),
            )
            .update({ReminderRow.cancelled_at: now}, synchronize_session=False)
        )
        self.db.commit()
        return changed

    def list_due(self, now: datetime, limit: int = 100) -> list[Reminder]:
        rows = (
            self.db.query(ReminderRow)
            .filter(
                ReminderRow.due_at <= now,
                ReminderRow.sent_at.is_(None),
                ReminderRow.cancelled_at.is_(None),
            )
            .order_by(ReminderRow.due_at)
            .limit(limit)
            .all()
        )
        return [Reminder.model_validate(row) for row in rows]

    def mark_sent(self, reminder_id: str, provider_ref: Optional[str], now: datetime) -> bool:
        """Conditional update; False when the reminder was already sent"""
        changed = (
            self.db.query(ReminderRow)
            .filter(ReminderRow.id == reminder_id, ReminderRow.sent_at.is_(None))
            .update(
                {ReminderRow.sent_at: now, ReminderRow.provider_ref: provider_ref},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return changed == 1
