"""Contact domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ...shared.validators import normalize_phone, validate_email


class ContactCreate(BaseModel):
    """Identity fields submitted with a public appointment or quote form"""

    firstName: str
    lastName: str
    email: str
    phone: Optional[str] = None
    consent: bool = False

    @field_validator("firstName", "lastName")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("email")
    @classmethod
    def validate_email_field(cls, v):
        return validate_email(v)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return normalize_phone(v)


class Contact(BaseModel):
    """Contact snapshot carried by appointments and quotes"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    consent_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
