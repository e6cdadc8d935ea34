# tests/conftest.py
import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from clinic_queue.broadcast import Broadcaster, InMemoryPublisher
from clinic_queue.database import init_db
from clinic_queue.models import ClinicSettings, Token
from clinic_queue.services import ClinicService

# Monday morning
START = datetime(2026, 10, 19, 9, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


class RecordingNotifier:
    """Stands in for the Redis-backed notifier and remembers every request."""

    def __init__(self):
        self.sent = []

    def request(self, token, kind, **context):
        self.sent.append({"tokenNumber": token.token_number, "kind": kind, "context": context})
        return self.sent[-1]

    def kinds(self, kind):
        return [n["tokenNumber"] for n in self.sent if n["kind"] == kind]

    def history(self, limit=50):
        return list(reversed(self.sent))[:limit]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(engine, clock, publisher, notifier):
    return ClinicService(
        engine,
        broadcaster=Broadcaster([publisher]),
        notifier=notifier,
        clock=clock,
        doctor_id="dr-test",
        lock_timeout=0.5,
    )


@pytest.fixture
def book(service, clock):
    """Book a token; keyword arguments override fields of the request body."""
    counter = itertools.count(1)

    def _book(day=None, **overrides):
        n = next(counter)
        payload = {
            "patientName": f"Patient {n}",
            "patientPhone": f"98765{n:05d}",
            "patientAge": 30 + n,
            "patientGender": "female",
            "bookingDate": (day or clock.now.date()).isoformat(),
            "symptoms": "fever",
            "notifications": {"sms": True},
        }
        payload.update(overrides)
        return service.book(payload)

    return _book


@pytest.fixture
def fetch(engine):
    def _fetch(token_id) -> Token:
        with Session(engine) as db:
            return db.get(Token, token_id)

    return _fetch


@pytest.fixture
def update_settings(engine):
    def _update(**values):
        with Session(engine) as db:
            settings = db.get(ClinicSettings, 1)
            for key, value in values.items():
                setattr(settings, key, value)
            db.add(settings)
            db.commit()

    return _update
