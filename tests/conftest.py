import itertools
import os
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from fieldbook import models  # noqa: E402,F401
from fieldbook.database import Base  # noqa: E402
from fieldbook.domain.appointments.engine import AppointmentEngine  # noqa: E402
from fieldbook.domain.contacts.schemas import Contact  # noqa: E402
from fieldbook.domain.quotes.engine import QuoteEngine  # noqa: E402
from fieldbook.domain.scheduling.reminders import ReminderScheduler  # noqa: E402
from fieldbook.domain.scheduling.token_service import InMemoryTokenStore, TokenService  # noqa: E402

GUADELOUPE = "America/Guadeloupe"
GP = ZoneInfo(GUADELOUPE)
ADMIN_EMAIL = "admin@example.com"
BASE_URL = "https://book.example.com/actions"

# Saturday 8 March 2025, 09:00 in Guadeloupe (UTC-4, no DST)
FROZEN_NOW = datetime(2025, 3, 8, 13, 0, tzinfo=timezone.utc)


def local(*args) -> datetime:
    """Guadeloupe wall-clock time as an aware datetime"""
    return datetime(*args, tzinfo=GP)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


class Sequence:
    def __init__(self, prefix: str):
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}-{next(self._counter)}"


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def ids():
    return Sequence("id")


@pytest.fixture
def token_store():
    return InMemoryTokenStore()


@pytest.fixture
def tokens(token_store, clock, ids):
    return TokenService(token_store, clock=clock, secret_factory=Sequence("secret"), id_factory=ids)


@pytest.fixture
def reminders(clock, ids):
    return ReminderScheduler(clock=clock, id_factory=ids)


@pytest.fixture
def appointment_engine(tokens, reminders, clock, ids):
    return AppointmentEngine(
        tokens,
        reminders,
        clock=clock,
        id_factory=ids,
        admin_email=ADMIN_EMAIL,
        base_url=BASE_URL,
    )


@pytest.fixture
def quote_engine(tokens, clock, ids):
    return QuoteEngine(
        tokens,
        clock=clock,
        id_factory=ids,
        admin_email=ADMIN_EMAIL,
        base_url=BASE_URL,
        business_timezone=GUADELOUPE,
    )


@pytest.fixture
def contact():
    return Contact(
        id="contact-1",
        first_name="Marie",
        last_name="Lebon",
        email="marie@example.com",
        phone="+590690123456",
    )


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
