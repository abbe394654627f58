"""Session scope and database error translation."""

from datetime import time

import pytest
from sqlalchemy.exc import OperationalError

from backend.models.slot import DoctorSlot, SlotBooking
from backend.services.db import build_session_factory, get_session, translate_db_errors
from backend.services.errors import ConcurrencyConflictError, ReferenceNotFoundError
from helpers import DAY


def _slot(name: str = "Morning") -> DoctorSlot:
    return DoctorSlot(
        doctor_id="doc-1",
        date=DAY,
        name=name,
        start_time=time(9, 0),
        end_time=time(10, 0),
        max_capacity=2,
        current_bookings=0,
        last_booking_order=0,
        active=True,
    )


def test_session_commits_on_success(db_engine) -> None:
    factory = build_session_factory(db_engine)

    with get_session(factory) as session:
        session.add(_slot())

    with get_session(factory) as session:
        assert session.query(DoctorSlot).count() == 1


def test_session_rolls_back_on_error(db_engine) -> None:
    factory = build_session_factory(db_engine)

    with pytest.raises(RuntimeError):
        with get_session(factory) as session:
            session.add(_slot())
            session.flush()
            raise RuntimeError("boom")

    with get_session(factory) as session:
        assert session.query(DoctorSlot).count() == 0


def test_dangling_foreign_key_is_reference_error(db_engine) -> None:
    factory = build_session_factory(db_engine)

    with pytest.raises(ReferenceNotFoundError):
        with get_session(factory) as session:
            session.add(SlotBooking(slot_id=999, appointment_id=999, booking_order=1))
            session.flush()


def test_unique_race_is_concurrency_conflict(db_engine) -> None:
    factory = build_session_factory(db_engine)

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        with get_session(factory) as session:
            session.add(_slot("Morning"))
            session.add(_slot("Morning"))
            session.flush()

    assert excinfo.value.retryable is True
    assert excinfo.value.to_dict()["error"] == "concurrency_conflict"


def test_lock_timeout_is_retryable() -> None:
    with pytest.raises(ConcurrencyConflictError):
        with translate_db_errors():
            raise OperationalError("UPDATE doctor_slots", {}, Exception("database is locked"))


def test_other_operational_errors_pass_through() -> None:
    with pytest.raises(OperationalError):
        with translate_db_errors():
            raise OperationalError("SELECT 1", {}, Exception("no such table: nowhere"))
