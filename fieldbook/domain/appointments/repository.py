"""Appointment repository - Database operations for appointments"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import Appointment as AppointmentRow
from ...shared.persistence import column_values, update_if_unchanged
from .schemas import Appointment, AppointmentStatus

# Columns the engines never write through an update
_IMMUTABLE = {"id", "contact", "version", "created_at"}


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def _query(db: Session):
        return db.query(AppointmentRow).options(joinedload(AppointmentRow.contact))

    @staticmethod
    def _snapshot(row: Optional[AppointmentRow]) -> Optional[Appointment]:
        return Appointment.model_validate(row) if row else None

    @classmethod
    def get_by_id(cls, db: Session, appointment_id: str) -> Optional[Appointment]:
        row = cls._query(db).filter(AppointmentRow.id == appointment_id).first()
        return cls._snapshot(row)

    @classmethod
    def get_by_confirmation_token(cls, db: Session, secret: str) -> Optional[Appointment]:
        if not secret:
            return None
        row = cls._query(db).filter(AppointmentRow.confirmation_token == secret).first()
        return cls._snapshot(row)

    @classmethod
    def get_by_cancellation_token(cls, db: Session, secret: str) -> Optional[Appointment]:
        if not secret:
            return None
        row = cls._query(db).filter(AppointmentRow.cancellation_token == secret).first()
        return cls._snapshot(row)

    @classmethod
    def create(cls, db: Session, appointment: Appointment) -> Appointment:
        """Insert a freshly submitted appointment"""
        row = AppointmentRow(
            contact_id=appointment.contact.id,
            **column_values(appointment, exclude={"contact", "version"}),
        )
        db.add(row)
        db.commit()
        return cls.get_by_id(db, row.id)

    @staticmethod
    def update(db: Session, appointment: Appointment) -> Appointment:
        """
        Persist an engine result.

        ``appointment.version`` must be the version that was read; the write
        fails with ConcurrentModification if another request got there first.
        """
        update_if_unchanged(
            db,
            AppointmentRow,
            appointment.id,
            appointment.version,
            column_values(appointment, exclude=_IMMUTABLE),
        )
        return appointment.model_copy(update={"version": appointment.version + 1})

    @classmethod
    def list_upcoming(cls, db: Session, now: datetime, days: int = 7) -> list[Appointment]:
        """Confirmed appointments scheduled within the next ``days`` days"""
        rows = (
            cls._query(db)
            .filter(
                AppointmentRow.status == AppointmentStatus.CONFIRMED.value,
                AppointmentRow.scheduled_at >= now,
                AppointmentRow.scheduled_at <= now + timedelta(days=days),
            )
            .order_by(AppointmentRow.scheduled_at)
            .all()
        )
        return [Appointment.model_validate(row) for row in rows]

    @staticmethod
    def count_by_status(db: Session) -> dict:
        """Appointment counts keyed by status, every status present"""
        counts = {status.value: 0 for status in AppointmentStatus}
        rows = (
            db.query(AppointmentRow.status, func.count(AppointmentRow.id))
            .group_by(AppointmentRow.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts
