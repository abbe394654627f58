"""Automatic no-show sweep."""

from helpers import DAY, DOCTOR, at, queue_ids


def test_sweep_marks_only_overdue_scheduled_appointments(front_desk, scope, make_slot, book, clock, sink) -> None:
    slot_id = make_slot(capacity=2)
    overdue = book("p-overdue", slot_id=slot_id)
    arrived = book("p-arrived", when=at(9, 10))
    upcoming = book("p-upcoming", when=at(9, 45))
    front_desk.check_in(scope, arrived.id)
    clock.now = at(10)

    marked = front_desk.mark_overdue_no_shows(scope)

    assert [item.id for item in marked] == [overdue.id]
    stored = front_desk.get_appointment(scope, overdue.id)
    assert stored.status == "no-show"
    assert stored.queue_position is None
    assert front_desk.get_slot(scope, slot_id).current_bookings == 1
    assert queue_ids(front_desk, scope) == [arrived.id, upcoming.id]
    assert sink.of_type("status_changed")[-1].payload["automatic"] is True


def test_sweep_honours_custom_grace(front_desk, scope, book, clock) -> None:
    appointment = book("p1", when=at(9, 45))
    clock.now = at(10)

    assert front_desk.mark_overdue_no_shows(scope, grace_minutes=30) == []
    marked = front_desk.mark_overdue_no_shows(scope, grace_minutes=10)

    assert [item.id for item in marked] == [appointment.id]
    assert front_desk.get_queue(scope, DOCTOR, DAY).entries == []
