"""Queue ordering engine: the single writer of ``queue_position``."""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from backend.models.appointment import ACTIVE_STATUS_VALUES, Appointment
from backend.services.events import EventBuffer

LOGGER = logging.getLogger(__name__)


def load_day(session: Session, doctor_id: str, day: date) -> List[Appointment]:
    """Every appointment of a doctor's day, whatever its status."""

    stmt = (
        select(Appointment)
        .where(Appointment.doctor_id == doctor_id, Appointment.service_day == day)
        .options(selectinload(Appointment.slot_booking))
        .order_by(Appointment.id)
    )
    return list(session.scalars(stmt))


def order_active(appointments: List[Appointment]) -> List[Appointment]:
    """Sort the active subset: emergencies first, then the regular queue.

    Emergencies go by scheduled time then creation order. Regular
    appointments go by scheduled time then slot booking order; slot-bound
    appointments carry their slot's start time, so within a slot the booking
    order decides.
    """

    active = [item for item in appointments if item.status in ACTIVE_STATUS_VALUES]
    emergency = sorted(
        (item for item in active if item.emergency),
        key=lambda item: (item.scheduled_datetime, item.id),
    )
    regular = sorted(
        (item for item in active if not item.emergency),
        key=lambda item: (
            item.scheduled_datetime,
            item.booking_order or 0,
            item.id,
        ),
    )
    return emergency + regular


def recompute_queue(
    session: Session,
    events: Optional[EventBuffer],
    doctor_id: str,
    day: date,
) -> List[Tuple[int, int]]:
    """Recalculate positions for ``(doctor_id, day)`` inside the caller's transaction.

    Returns ``(appointment_id, position)`` pairs in queue order. Running it
    again without an intervening mutation changes nothing.
    """

    session.flush()
    appointments = load_day(session, doctor_id, day)
    ordered = order_active(appointments)

    positions: Dict[int, int] = {
        item.id: position for position, item in enumerate(ordered, start=1)
    }

    changed = 0
    for item in appointments:
        new_position = positions.get(item.id)
        if item.queue_position == new_position:
            continue
        old_position = item.queue_position
        item.queue_position = new_position
        changed += 1
        if events is not None:
            events.record(
                "appointment",
                item.id,
                "queue_position_changed",
                before_status=item.status,
                after_status=item.status,
                doctor_id=doctor_id,
                service_day=day.isoformat(),
                old_position=old_position,
                new_position=new_position,
            )

    session.flush()
    LOGGER.debug(
        "Recomputed queue doctor=%s day=%s active=%s changed=%s",
        doctor_id,
        day,
        len(ordered),
        changed,
    )
    return [(item.id, positions[item.id]) for item in ordered]
