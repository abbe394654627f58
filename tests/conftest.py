"""Shared fixtures: an on-disk SQLite engine per test and a fixed clock."""

from datetime import date, datetime, time

import pytest

from backend.services.db import build_engine, build_session_factory
from backend.services.engine import FrontDeskEngine
from backend.services.events import ChangeNotifier, ClinicScope, InMemoryEventSink
from backend.services.slots import SlotSpec
from backend.utils.config import Settings
from helpers import DAY, DOCTOR, FixedClock, at


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        notifier_backend="memory",
        clinic_timezone="Asia/Kolkata",
        default_duration_minutes=30,
        no_show_grace_minutes=30,
        max_delay_minutes=720,
    )


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(at(8))


@pytest.fixture
def scope() -> ClinicScope:
    return ClinicScope(clinic_id="clinic-1", actor="front-desk")


@pytest.fixture
def front_desk(db_engine, sink, clock, settings) -> FrontDeskEngine:
    return FrontDeskEngine(
        build_session_factory(db_engine),
        ChangeNotifier(sink),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def make_slot(front_desk, scope):
    """Create one slot and return its id."""

    def _make(
        name: str = "Morning",
        start: time = time(9, 0),
        end: time = time(10, 0),
        capacity: int = 3,
        doctor_id: str = DOCTOR,
        day: date = DAY,
    ) -> int:
        created = front_desk.create_slots(
            scope, doctor_id, day, [SlotSpec(name, start, end, capacity)]
        )
        return created[0].id

    return _make


@pytest.fixture
def book(front_desk, scope):
    """Book an appointment for ``DOCTOR`` and return it."""

    def _book(patient_id: str, when: datetime = None, **kwargs):
        kwargs.setdefault("doctor_id", DOCTOR)
        return front_desk.book_appointment(
            scope,
            patient_id=patient_id,
            scheduled_datetime=when,
            **kwargs,
        )

    return _book
