"""Slot registry and booking ledger behaviour."""

from datetime import time

import pytest

from backend.services.errors import (
    CapacityBelowBookingsError,
    ReferenceNotFoundError,
    SlotFullError,
    SlotHasBookingsError,
    SlotInactiveError,
    ValidationError,
)
from backend.services.slots import SlotSpec
from helpers import DAY, DOCTOR, at, queue_ids


def test_create_slots_returns_them_in_start_order(front_desk, scope, sink) -> None:
    created = front_desk.create_slots(
        scope,
        DOCTOR,
        DAY,
        [
            SlotSpec("Afternoon", time(14, 0), time(15, 0), 4),
            SlotSpec("Morning", time(9, 0), time(10, 0), 2),
        ],
    )

    assert [slot.name for slot in created] == ["Afternoon", "Morning"]
    listed = front_desk.list_slots(scope, DOCTOR, DAY)
    assert [slot.name for slot in listed] == ["Morning", "Afternoon"]
    assert all(slot.current_bookings == 0 and slot.active for slot in listed)
    assert len(sink.of_type("slot_created")) == 2


def test_invalid_batch_reports_every_violation(front_desk, scope) -> None:
    with pytest.raises(ValidationError) as excinfo:
        front_desk.create_slots(
            scope,
            DOCTOR,
            DAY,
            [
                SlotSpec("", time(9, 0), time(10, 0), 0),
                SlotSpec("Late", time(11, 0), time(10, 0), 5),
                SlotSpec("Huge", time(12, 0), time(13, 0), 51),
            ],
        )

    fields = {item["field"] for item in excinfo.value.violations}
    assert fields == {
        "slots[0].name",
        "slots[0].max_capacity",
        "slots[1].end_time",
        "slots[2].max_capacity",
    }
    assert front_desk.list_slots(scope, DOCTOR, DAY) == []


def test_duplicate_or_overlapping_slot_rejects_whole_batch(front_desk, scope, make_slot) -> None:
    make_slot("Evening", time(18, 0), time(19, 0))

    with pytest.raises(ValidationError) as excinfo:
        front_desk.create_slots(
            scope,
            DOCTOR,
            DAY,
            [
                SlotSpec("Morning", time(9, 0), time(10, 0), 3),
                SlotSpec("morning ", time(9, 30), time(10, 30), 3),
                SlotSpec("Dusk", time(18, 30), time(19, 30), 3),
            ],
        )

    fields = [item["field"] for item in excinfo.value.violations]
    assert "slots[1].name" in fields
    assert "slots[1].start_time" in fields
    assert "slots[2].start_time" in fields
    assert [slot.name for slot in front_desk.list_slots(scope, DOCTOR, DAY)] == ["Evening"]


def test_same_name_on_another_day_is_allowed(front_desk, scope, make_slot) -> None:
    make_slot("Morning")
    other_day = DAY.replace(day=11)

    created = front_desk.create_slots(
        scope, DOCTOR, other_day, [SlotSpec("Morning", time(9, 0), time(10, 0), 3)]
    )

    assert created[0].date == other_day


def test_booking_stops_at_capacity(front_desk, scope, make_slot, book, sink) -> None:
    slot_id = make_slot(capacity=2)
    first = book("p1", slot_id=slot_id)
    second = book("p2", slot_id=slot_id)

    with pytest.raises(SlotFullError) as excinfo:
        book("p3", slot_id=slot_id)

    assert excinfo.value.slot_id == slot_id
    assert (first.booking_order, second.booking_order) == (1, 2)
    assert front_desk.get_slot(scope, slot_id).current_bookings == 2
    assert queue_ids(front_desk, scope) == [first.id, second.id]
    assert len(sink.of_type("appointment_booked")) == 2


def test_booking_aligns_appointment_to_slot_start(make_slot, book) -> None:
    slot_id = make_slot(start=time(11, 0), end=time(12, 0))

    appointment = book("p1", slot_id=slot_id)

    assert appointment.scheduled_datetime.time() == time(11, 0)
    assert appointment.estimated_start_time == appointment.scheduled_datetime
    assert appointment.slot_id == slot_id


def test_booking_order_is_never_reused(front_desk, scope, make_slot, book) -> None:
    slot_id = make_slot(capacity=3)
    first = book("p1", slot_id=slot_id)
    book("p2", slot_id=slot_id)
    front_desk.cancel(scope, first.id, "changed plans")

    third = book("p3", slot_id=slot_id)

    assert third.booking_order == 3
    orders = [item.booking_order for item in front_desk.slot_bookings(scope, slot_id)]
    assert orders == [2, 3]
    assert front_desk.get_slot(scope, slot_id).current_bookings == 2


def test_slot_of_another_doctor_is_rejected(make_slot, book) -> None:
    slot_id = make_slot()

    with pytest.raises(ValidationError) as excinfo:
        book("p1", slot_id=slot_id, doctor_id="doc-2")

    assert excinfo.value.violations[0]["field"] == "slot_id"


def test_book_slot_for_existing_walk_in(front_desk, scope, make_slot, book) -> None:
    slot_id = make_slot()
    walk_in = book("p1", when=at(9, 30))

    booking = front_desk.book_slot(scope, slot_id, walk_in.id)

    assert booking.booking_order == 1
    stored = front_desk.get_appointment(scope, walk_in.id)
    assert stored.slot_id == slot_id
    assert stored.scheduled_datetime.time() == time(9, 0)

    with pytest.raises(ValidationError):
        front_desk.book_slot(scope, slot_id, walk_in.id)


def test_release_slot_frees_the_seat(front_desk, scope, make_slot, book) -> None:
    slot_id = make_slot(capacity=1)
    appointment = book("p1", slot_id=slot_id)

    assert front_desk.release_slot(scope, appointment.id) is True
    assert front_desk.release_slot(scope, appointment.id) is False

    stored = front_desk.get_appointment(scope, appointment.id)
    assert stored.slot_id is None
    assert stored.status == "scheduled"
    assert front_desk.get_slot(scope, slot_id).current_bookings == 0
    book("p2", slot_id=slot_id)


def test_capacity_cannot_drop_below_bookings(front_desk, scope, make_slot, book, sink) -> None:
    slot_id = make_slot(capacity=3)
    book("p1", slot_id=slot_id)
    book("p2", slot_id=slot_id)

    with pytest.raises(CapacityBelowBookingsError) as excinfo:
        front_desk.update_slot(scope, slot_id, {"max_capacity": 1})
    assert excinfo.value.current_bookings == 2

    updated = front_desk.update_slot(scope, slot_id, {"max_capacity": 5, "name": "Early"})

    assert (updated.max_capacity, updated.name) == (5, "Early")
    assert sink.of_type("slot_updated")[-1].payload["changes"] == {
        "name": "Early",
        "max_capacity": 5,
    }


def test_booked_slot_times_are_frozen(front_desk, scope, make_slot, book) -> None:
    slot_id = make_slot("Morning", time(9, 0), time(10, 0), capacity=2)
    appointment = book("p1", slot_id=slot_id)

    with pytest.raises(SlotHasBookingsError):
        front_desk.update_slot(scope, slot_id, {"start_time": time(8, 30)})
    with pytest.raises(SlotHasBookingsError):
        front_desk.update_slot(scope, slot_id, {"end_time": time(10, 30)})

    renamed = front_desk.update_slot(
        scope, slot_id, {"name": "Early", "start_time": time(9, 0)}
    )
    assert (renamed.name, renamed.start_time) == ("Early", time(9, 0))
    stored = front_desk.get_appointment(scope, appointment.id)
    assert stored.scheduled_datetime == at(9)

    front_desk.cancel(scope, appointment.id)
    moved = front_desk.update_slot(scope, slot_id, {"start_time": time(8, 30)})
    assert moved.start_time == time(8, 30)


def test_update_rejects_unknown_fields_and_overlaps(front_desk, scope, make_slot) -> None:
    slot_id = make_slot("Morning", time(9, 0), time(10, 0))
    make_slot("Late", time(10, 0), time(11, 0))

    with pytest.raises(ValidationError) as unknown:
        front_desk.update_slot(scope, slot_id, {"doctor_id": "doc-2"})
    assert unknown.value.violations == [{"field": "doctor_id", "message": "Field cannot be edited"}]

    with pytest.raises(ValidationError) as overlap:
        front_desk.update_slot(scope, slot_id, {"end_time": time(10, 30)})
    assert overlap.value.violations[0]["field"] == "start_time"


def test_delete_requires_an_empty_slot(front_desk, scope, make_slot, book) -> None:
    slot_id = make_slot()
    appointment = book("p1", slot_id=slot_id)

    with pytest.raises(SlotHasBookingsError):
        front_desk.delete_slot(scope, slot_id)

    front_desk.cancel(scope, appointment.id)
    front_desk.delete_slot(scope, slot_id)

    with pytest.raises(ReferenceNotFoundError):
        front_desk.get_slot(scope, slot_id)


def test_bulk_deactivate_is_idempotent(front_desk, scope, make_slot, book, sink) -> None:
    morning = make_slot("Morning", time(9, 0), time(10, 0))
    noon = make_slot("Noon", time(12, 0), time(13, 0))

    first = front_desk.bulk_set_active(scope, [morning, noon], False)
    second = front_desk.bulk_set_active(scope, [noon, morning], False)

    assert [slot.id for slot in first] == [morning, noon]
    assert [slot.id for slot in second] == [noon, morning]
    assert not any(slot.active for slot in second)
    assert len(sink.of_type("slot_deactivated")) == 2

    with pytest.raises(SlotInactiveError):
        book("p1", slot_id=morning)

    with pytest.raises(ReferenceNotFoundError):
        front_desk.bulk_set_active(scope, [morning, 9999], True)
    assert not front_desk.get_slot(scope, morning).active


def test_available_only_listing_and_statistics(front_desk, scope, make_slot, book) -> None:
    full = make_slot("Morning", time(9, 0), time(10, 0), capacity=1)
    open_slot = make_slot("Noon", time(12, 0), time(13, 0), capacity=3)
    book("p1", slot_id=full)

    available = front_desk.list_slots(scope, DOCTOR, DAY, available_only=True)
    stats = front_desk.slot_statistics(scope, DOCTOR, DAY, DAY)

    assert [slot.id for slot in available] == [open_slot]
    assert stats == {
        "total_slots": 2,
        "total_capacity": 4,
        "total_bookings": 1,
        "average_utilization": 25.0,
    }
