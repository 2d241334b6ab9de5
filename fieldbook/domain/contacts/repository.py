"""Contact repository - Database operations for contacts"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Contact as ContactRow
from .schemas import Contact, ContactCreate


class ContactRepository:
    """Repository for contact database operations"""

    @staticmethod
    def get_by_id(db: Session, contact_id: str) -> Optional[Contact]:
        row = db.query(ContactRow).filter(ContactRow.id == contact_id).first()
        return Contact.model_validate(row) if row else None

    @staticmethod
    def upsert(db: Session, data: ContactCreate, now: datetime) -> Contact:
        """Create the contact or correct the stored identity for this email"""
        row = db.query(ContactRow).filter(ContactRow.email == data.email).first()
        if row is None:
            row = ContactRow(email=data.email)
            db.add(row)

        row.first_name = data.firstName
        row.last_name = data.lastName
        row.phone = data.phone
        if data.consent:
            row.consent_at = now

        db.commit()
        db.refresh(row)
        return Contact.model_validate(row)
