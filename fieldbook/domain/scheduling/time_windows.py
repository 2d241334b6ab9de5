"""
Time-window rules for bookable slots.

Slots start every 30 minutes from 08:00 to 11:30 and from 14:00 to 17:00
local time. The afternoon range includes 17:00 as a start while the
morning range stops at 11:30; that asymmetry matches the slot list the
booking form has always offered.

Every check first normalizes the instant into the requester's IANA zone.
A UTC instant and a local wall-clock time are different things here, so
naive datetimes are refused instead of being guessed at.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from ...config import BUSINESS_TIMEZONE
from ...errors import InvalidSlot, OutOfHorizon

SLOT_MINUTES = 30
MORNING = (time(8, 0), time(11, 30))
AFTERNOON = (time(14, 0), time(17, 0))
MIN_NOTICE = timedelta(days=1)
MAX_HORIZON = relativedelta(months=1)


def _expand(start: time, last: time) -> list[time]:
    slots = []
    current = datetime.combine(date.min, start)
    end = datetime.combine(date.min, last)
    while current <= end:
        slots.append(current.time())
        current += timedelta(minutes=SLOT_MINUTES)
    return slots


_SLOT_STARTS = tuple(_expand(*MORNING) + _expand(*AFTERNOON))


def allowed_slot_starts() -> list[time]:
    """Local start times a slot may begin at"""
    return list(_SLOT_STARTS)


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or BUSINESS_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidSlot(f"Unknown timezone: {name}") from e


def to_local(value: datetime, timezone: Optional[str]) -> datetime:
    """Convert a tz-aware instant to wall-clock time in ``timezone``"""
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidSlot("Datetime must carry a timezone offset")
    return value.astimezone(get_zone(timezone))


def is_valid_slot(value: datetime, timezone: Optional[str]) -> bool:
    """True iff the local hour:minute is an allowed slot start"""
    local = to_local(value, timezone)
    if local.second or local.microsecond:
        return False
    return time(local.hour, local.minute) in _SLOT_STARTS


def is_within_booking_horizon(
    value: datetime, now: datetime, timezone: Optional[str] = None
) -> bool:
    """True iff now + 1 day <= value <= now + 1 calendar month.

    Month arithmetic is done on the local calendar so that "one month
    from 31 January" lands on the last day of February.
    """
    local_value = to_local(value, timezone)
    local_now = to_local(now, timezone)
    earliest = local_now + MIN_NOTICE
    latest = local_now + MAX_HORIZON
    return earliest <= local_value <= latest


def validate(value: datetime, timezone: Optional[str], now: datetime) -> None:
    """
    Raise when ``value`` cannot be booked.

    Raises:
        InvalidSlot: not a slot start in ``timezone`` (or naive / unknown zone)
        OutOfHorizon: slot is sooner than tomorrow or later than one month out
    """
    if not is_valid_slot(value, timezone):
        local = to_local(value, timezone)
        raise InvalidSlot(
            f"{local:%H:%M} is not a bookable slot (08:00-11:30 and 14:00-17:00, every 30 min)"
        )
    if not is_within_booking_horizon(value, now, timezone):
        raise OutOfHorizon("Appointments must be booked between tomorrow and one month from today")


def hours_until(value: datetime, now: datetime) -> float:
    return (value - now).total_seconds() / 3600


def available_slots(day: date, timezone: Optional[str], now: datetime) -> list[datetime]:
    """Bookable slot starts on a local calendar day, as tz-aware datetimes"""
    zone = get_zone(timezone)
    candidates = [datetime.combine(day, start, tzinfo=zone) for start in _SLOT_STARTS]
    return [c for c in candidates if is_within_booking_horizon(c, now, timezone)]
