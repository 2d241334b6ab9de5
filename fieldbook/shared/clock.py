"""Clock helpers - the domain never reads machine-local time"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
