"""Shared validation utilities"""

import re
from typing import Any, Optional


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Args:
        email: Email address string

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    # Basic email validation pattern
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164-like storage format.

    Accepts international numbers ("+590 690 12 34 56") and bare national
    numbers; keeps digits and a leading "+".

    Raises:
        ValueError: If the number has fewer than 6 or more than 15 digits
    """
    if not phone or not phone.strip():
        return None

    phone = phone.strip()
    prefix = "+" if phone.startswith("+") else ""
    digits = re.sub(r"\D", "", phone)

    if not 6 <= len(digits) <= 15:
        raise ValueError("Phone number must contain between 6 and 15 digits")

    return f"{prefix}{digits}"


def strip_or_none(value: Any) -> Any:
    """Trim strings; blank strings become None, other values pass through"""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def filter_blank_fields(payload: Optional[dict]) -> dict:
    """
    Keep only meaningful update fields.

    None values and strings that are empty after trimming are dropped so
    that a whitespace-only form field never overwrites a stored value.
    """
    if not payload:
        return {}
    filtered = {}
    for key, value in payload.items():
        cleaned = strip_or_none(value)
        if cleaned is not None:
            filtered[key] = cleaned
    return filtered
