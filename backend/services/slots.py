"""Slot registry and slot booking ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment
from backend.models.slot import (
    MAX_SLOT_CAPACITY,
    MAX_SLOT_NAME_LENGTH,
    MIN_SLOT_CAPACITY,
    DoctorSlot,
    SlotBooking,
)
from backend.services.errors import (
    CapacityBelowBookingsError,
    ReferenceNotFoundError,
    SlotFullError,
    SlotHasBookingsError,
    SlotInactiveError,
    ValidationError,
)
from backend.services.events import EventBuffer

LOGGER = logging.getLogger(__name__)

EDITABLE_SLOT_FIELDS = ("name", "start_time", "end_time", "max_capacity")


@dataclass(frozen=True)
class SlotSpec:
    name: str
    start_time: time
    end_time: time
    max_capacity: int


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def get_slot(session: Session, slot_id: int, *, for_update: bool = False) -> DoctorSlot:
    slot = session.get(DoctorSlot, slot_id, with_for_update=for_update)
    if slot is None:
        raise ReferenceNotFoundError("slot", slot_id)
    return slot


def list_slots(
    session: Session,
    doctor_id: str,
    day: date,
    *,
    available_only: bool = False,
) -> List[DoctorSlot]:
    """Return a doctor's slots for a date ordered by start time."""

    stmt = (
        select(DoctorSlot)
        .where(DoctorSlot.doctor_id == doctor_id, DoctorSlot.date == day)
        .order_by(DoctorSlot.start_time, DoctorSlot.id)
    )
    if available_only:
        stmt = stmt.where(
            DoctorSlot.active.is_(True),
            DoctorSlot.current_bookings < DoctorSlot.max_capacity,
        )
    return list(session.scalars(stmt))


def slot_bookings(session: Session, slot_id: int) -> List[SlotBooking]:
    """Return the ledger of a slot in booking order."""

    get_slot(session, slot_id)
    stmt = (
        select(SlotBooking)
        .where(SlotBooking.slot_id == slot_id)
        .order_by(SlotBooking.booking_order)
    )
    return list(session.scalars(stmt))


def slot_statistics(
    session: Session,
    doctor_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Dict[str, Any]:
    """Aggregate capacity and utilisation over a doctor's active slots."""

    stmt = select(
        func.count(DoctorSlot.id),
        func.coalesce(func.sum(DoctorSlot.max_capacity), 0),
        func.coalesce(func.sum(DoctorSlot.current_bookings), 0),
    ).where(DoctorSlot.doctor_id == doctor_id, DoctorSlot.active.is_(True))
    if start_date is not None:
        stmt = stmt.where(DoctorSlot.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(DoctorSlot.date <= end_date)

    total_slots, total_capacity, total_bookings = session.execute(stmt).one()
    utilization = (total_bookings / total_capacity) * 100 if total_capacity else 0.0
    return {
        "total_slots": int(total_slots),
        "total_capacity": int(total_capacity),
        "total_bookings": int(total_bookings),
        "average_utilization": round(utilization, 2),
    }


# ---------------------------------------------------------------------------
# Registry mutations
# ---------------------------------------------------------------------------
def create_slots(
    session: Session,
    events: EventBuffer,
    doctor_id: str,
    day: date,
    specs: Sequence[SlotSpec],
) -> List[DoctorSlot]:
    """Create every slot in ``specs`` or none of them."""

    if not specs:
        raise ValidationError.single("slots", "At least one slot is required")

    existing = list_slots(session, doctor_id, day)
    violations: List[Dict[str, str]] = []
    for index, spec in enumerate(specs):
        violations.extend(_field_violations(f"slots[{index}]", spec))

    taken_names = {slot.name.strip().lower(): slot.name for slot in existing}
    for index, spec in enumerate(specs):
        key = (spec.name or "").strip().lower()
        if not key:
            continue
        if key in taken_names:
            violations.append(
                {
                    "field": f"slots[{index}].name",
                    "message": f"Slot name '{spec.name}' is already used on {day.isoformat()}",
                }
            )
        taken_names[key] = spec.name

    placed = [(slot.name, slot.start_time, slot.end_time) for slot in existing]
    for index, spec in enumerate(specs):
        if not _has_valid_window(spec.start_time, spec.end_time):
            continue
        clash = _find_overlap(spec.start_time, spec.end_time, placed)
        if clash is not None:
            violations.append(
                {
                    "field": f"slots[{index}].start_time",
                    "message": f"Overlaps slot '{clash}'",
                }
            )
        placed.append((spec.name, spec.start_time, spec.end_time))

    if violations:
        LOGGER.warning(
            "Rejected slot batch for doctor=%s day=%s: %s violations",
            doctor_id,
            day,
            len(violations),
        )
        raise ValidationError(violations)

    slots = [
        DoctorSlot(
            doctor_id=doctor_id,
            date=day,
            name=spec.name.strip(),
            start_time=spec.start_time,
            end_time=spec.end_time,
            max_capacity=spec.max_capacity,
            current_bookings=0,
            last_booking_order=0,
            active=True,
        )
        for spec in specs
    ]
    session.add_all(slots)
    session.flush()

    for slot in slots:
        events.record(
            "slot",
            slot.id,
            "slot_created",
            doctor_id=doctor_id,
            date=day.isoformat(),
            name=slot.name,
            max_capacity=slot.max_capacity,
        )
    LOGGER.info("Created %s slots for doctor=%s day=%s", len(slots), doctor_id, day)
    return slots


def update_slot(
    session: Session,
    events: EventBuffer,
    slot_id: int,
    fields: Dict[str, Any],
) -> DoctorSlot:
    """Apply explicit edits to a slot."""

    slot = get_slot(session, slot_id, for_update=True)

    unknown = sorted(set(fields) - set(EDITABLE_SLOT_FIELDS))
    if unknown:
        raise ValidationError(
            [{"field": name, "message": "Field cannot be edited"} for name in unknown]
        )

    candidate = SlotSpec(
        name=fields.get("name", slot.name),
        start_time=fields.get("start_time", slot.start_time),
        end_time=fields.get("end_time", slot.end_time),
        max_capacity=fields.get("max_capacity", slot.max_capacity),
    )
    violations = _field_violations("", candidate)

    others = [
        other
        for other in list_slots(session, slot.doctor_id, slot.date)
        if other.id != slot.id
    ]
    if candidate.name and candidate.name.strip().lower() in {
        other.name.strip().lower() for other in others
    }:
        violations.append(
            {"field": "name", "message": f"Slot name '{candidate.name}' is already used"}
        )
    if _has_valid_window(candidate.start_time, candidate.end_time):
        clash = _find_overlap(
            candidate.start_time,
            candidate.end_time,
            [(other.name, other.start_time, other.end_time) for other in others],
        )
        if clash is not None:
            violations.append({"field": "start_time", "message": f"Overlaps slot '{clash}'"})

    if violations:
        raise ValidationError(violations)

    if candidate.max_capacity < slot.current_bookings:
        raise CapacityBelowBookingsError(slot.id, candidate.max_capacity, slot.current_bookings)

    moves_window = any(
        name in fields and fields[name] != getattr(slot, name) for name in ("start_time", "end_time")
    )
    if moves_window and slot.current_bookings > 0:
        LOGGER.warning("Rejected time edit on booked slot=%s", slot.id)
        raise SlotHasBookingsError(slot.id, slot.current_bookings)

    changed = {}
    for name in EDITABLE_SLOT_FIELDS:
        if name not in fields:
            continue
        value = getattr(candidate, name)
        if name == "name":
            value = value.strip()
        if getattr(slot, name) != value:
            setattr(slot, name, value)
            changed[name] = value.isoformat() if isinstance(value, time) else value

    if changed:
        session.flush()
        events.record("slot", slot.id, "slot_updated", changes=changed)
        LOGGER.info("Updated slot=%s fields=%s", slot.id, sorted(changed))
    return slot


def delete_slot(session: Session, events: EventBuffer, slot_id: int) -> None:
    slot = get_slot(session, slot_id, for_update=True)
    if slot.current_bookings > 0:
        raise SlotHasBookingsError(slot.id, slot.current_bookings)

    session.delete(slot)
    session.flush()
    events.record("slot", slot_id, "slot_deleted", doctor_id=slot.doctor_id)
    LOGGER.info("Deleted slot=%s", slot_id)


def bulk_set_active(
    session: Session,
    events: EventBuffer,
    slot_ids: Iterable[int],
    active: bool,
) -> List[DoctorSlot]:
    """Activate or deactivate slots; repeating the call changes nothing."""

    wanted = list(dict.fromkeys(slot_ids))
    if not wanted:
        return []

    slots = list(
        session.scalars(
            select(DoctorSlot).where(DoctorSlot.id.in_(wanted)).with_for_update()
        )
    )
    found = {slot.id for slot in slots}
    missing = [slot_id for slot_id in wanted if slot_id not in found]
    if missing:
        raise ReferenceNotFoundError("slot", missing[0] if len(missing) == 1 else missing)

    event_type = "slot_activated" if active else "slot_deactivated"
    for slot in slots:
        if slot.active == active:
            continue
        slot.active = active
        events.record("slot", slot.id, event_type, doctor_id=slot.doctor_id)

    session.flush()
    return sorted(slots, key=lambda item: wanted.index(item.id))


# ---------------------------------------------------------------------------
# Booking ledger
# ---------------------------------------------------------------------------
def book_slot(
    session: Session,
    events: EventBuffer,
    slot_id: int,
    appointment: Appointment,
) -> SlotBooking:
    """Take the next seat of a slot for ``appointment``.

    The capacity check and the increment happen in one conditional UPDATE so
    two bookings racing for the last seat cannot both win.
    """

    slot = get_slot(session, slot_id)

    violations = []
    if slot.doctor_id != appointment.doctor_id:
        violations.append({"field": "slot_id", "message": "Slot belongs to another doctor"})
    if slot.date != appointment.service_day:
        violations.append(
            {"field": "slot_id", "message": "Slot date differs from the appointment day"}
        )
    if appointment.slot_id is not None:
        violations.append(
            {"field": "appointment_id", "message": "Appointment is already booked into a slot"}
        )
    if not appointment.is_active:
        violations.append(
            {"field": "appointment_id", "message": f"Appointment is {appointment.status}"}
        )
    if violations:
        raise ValidationError(violations)

    stmt = (
        update(DoctorSlot)
        .where(
            DoctorSlot.id == slot_id,
            DoctorSlot.active.is_(True),
            DoctorSlot.current_bookings < DoctorSlot.max_capacity,
        )
        .values(
            current_bookings=DoctorSlot.current_bookings + 1,
            last_booking_order=DoctorSlot.last_booking_order + 1,
        )
        .returning(DoctorSlot.last_booking_order)
        .execution_options(synchronize_session=False)
    )
    booking_order = session.execute(stmt).scalar_one_or_none()
    session.refresh(slot)

    if booking_order is None:
        if not slot.active:
            LOGGER.warning("Booking rejected: slot=%s inactive", slot_id)
            raise SlotInactiveError(slot_id)
        LOGGER.warning("Booking rejected: slot=%s full", slot_id)
        raise SlotFullError(slot_id, slot.max_capacity)

    booking = SlotBooking(
        slot_id=slot_id,
        appointment_id=appointment.id,
        booking_order=booking_order,
    )
    session.add(booking)
    appointment.slot_id = slot_id
    appointment.slot_booking = booking
    appointment.scheduled_datetime = slot.starts_at
    appointment.estimated_start_time = slot.starts_at
    session.flush()

    events.record(
        "slot",
        slot_id,
        "slot_booked",
        appointment_id=appointment.id,
        booking_order=booking_order,
        current_bookings=slot.current_bookings,
        max_capacity=slot.max_capacity,
    )
    LOGGER.info(
        "Booked appointment=%s into slot=%s order=%s (%s/%s)",
        appointment.id,
        slot_id,
        booking_order,
        slot.current_bookings,
        slot.max_capacity,
    )
    return booking


def release_slot(session: Session, events: EventBuffer, appointment: Appointment) -> bool:
    """Give back the seat held by ``appointment``; False when it held none."""

    if appointment.slot_id is None:
        return False

    slot_id = appointment.slot_id
    booking = session.scalar(
        select(SlotBooking).where(SlotBooking.appointment_id == appointment.id)
    )
    if booking is not None:
        session.delete(booking)
    appointment.slot_booking = None
    appointment.slot_id = None

    session.execute(
        update(DoctorSlot)
        .where(DoctorSlot.id == slot_id, DoctorSlot.current_bookings > 0)
        .values(current_bookings=DoctorSlot.current_bookings - 1)
        .execution_options(synchronize_session=False)
    )
    session.flush()

    slot = session.get(DoctorSlot, slot_id)
    if slot is not None:
        session.refresh(slot)
    events.record(
        "slot",
        slot_id,
        "slot_released",
        appointment_id=appointment.id,
        current_bookings=slot.current_bookings if slot is not None else None,
    )
    LOGGER.info("Released slot=%s held by appointment=%s", slot_id, appointment.id)
    return True


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------
def _field_violations(prefix: str, spec: SlotSpec) -> List[Dict[str, str]]:
    def path(name: str) -> str:
        return f"{prefix}.{name}" if prefix else name

    violations: List[Dict[str, str]] = []
    name = (spec.name or "").strip()
    if not name:
        violations.append({"field": path("name"), "message": "Slot name is required"})
    elif len(name) > MAX_SLOT_NAME_LENGTH:
        violations.append(
            {
                "field": path("name"),
                "message": f"Slot name cannot exceed {MAX_SLOT_NAME_LENGTH} characters",
            }
        )

    capacity = spec.max_capacity
    if (
        not isinstance(capacity, int)
        or isinstance(capacity, bool)
        or not MIN_SLOT_CAPACITY <= capacity <= MAX_SLOT_CAPACITY
    ):
        violations.append(
            {
                "field": path("max_capacity"),
                "message": (
                    f"Capacity must be a whole number between "
                    f"{MIN_SLOT_CAPACITY} and {MAX_SLOT_CAPACITY}"
                ),
            }
        )

    if not isinstance(spec.start_time, time):
        violations.append({"field": path("start_time"), "message": "Invalid time"})
    if not isinstance(spec.end_time, time):
        violations.append({"field": path("end_time"), "message": "Invalid time"})
    elif isinstance(spec.start_time, time) and spec.end_time <= spec.start_time:
        violations.append(
            {"field": path("end_time"), "message": "End time must be after start time"}
        )
    return violations


def _has_valid_window(start: Any, end: Any) -> bool:
    return isinstance(start, time) and isinstance(end, time) and start < end


def _find_overlap(start: time, end: time, placed: Iterable[tuple]) -> Optional[str]:
    for name, other_start, other_end in placed:
        if start < other_end and other_start < end:
            return name
    return None
