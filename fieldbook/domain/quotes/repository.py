"""Quote repository - Database operations for quotes"""

from datetime import date
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import Quote as QuoteRow
from ...shared.persistence import column_values, update_if_unchanged
from .schemas import Quote, QuoteStatus


class QuoteRepository:
    """Repository for quote database operations"""

    @staticmethod
    def _query(db: Session):
        return db.query(QuoteRow).options(joinedload(QuoteRow.contact))

    @classmethod
    def get_by_id(cls, db: Session, quote_id: str) -> Optional[Quote]:
        row = cls._query(db).filter(QuoteRow.id == quote_id).first()
        return Quote.model_validate(row) if row else None

    @classmethod
    def create(cls, db: Session, quote: Quote) -> Quote:
        row = QuoteRow(
            contact_id=quote.contact.id,
            **column_values(quote, exclude={"contact", "version"}),
        )
        db.add(row)
        db.commit()
        return cls.get_by_id(db, row.id)

    @staticmethod
    def update(db: Session, quote: Quote) -> Quote:
        """Optimistic write of an engine result; see AppointmentRepository.update"""
        update_if_unchanged(
            db,
            QuoteRow,
            quote.id,
            quote.version,
            column_values(quote, exclude={"id", "contact", "version", "created_at"}),
        )
        return quote.model_copy(update={"version": quote.version + 1})

    @classmethod
    def list_expirable(cls, db: Session, today: date) -> list[Quote]:
        """SENT quotes whose validity date is behind ``today``"""
        rows = (
            cls._query(db)
            .filter(
                QuoteRow.status == QuoteStatus.SENT.value,
                QuoteRow.quote_valid_until < today,
            )
            .all()
        )
        return [Quote.model_validate(row) for row in rows]

    @staticmethod
    def get_stats(db: Session) -> dict:
        """Counts per status and the share of quotes that were accepted"""
        counts = {status.value.lower(): 0 for status in QuoteStatus}
        rows = db.query(QuoteRow.status, func.count(QuoteRow.id)).group_by(QuoteRow.status).all()
        for status, count in rows:
            counts[status.lower()] = count

        total = sum(counts.values())
        accepted = counts[QuoteStatus.ACCEPTED.value.lower()]
        return {
            "total": total,
            **counts,
            "conversionRate": f"{(accepted / total) * 100:.2f}" if total > 0 else "0.00",
        }
