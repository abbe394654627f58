"""Delay propagation across a doctor's remaining appointments."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment, AppointmentStatus
from backend.services.errors import ValidationError
from backend.services.events import EventBuffer

LOGGER = logging.getLogger(__name__)


def remaining_appointments(session: Session, doctor_id: str, day: date) -> List[Appointment]:
    stmt = (
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.service_day == day,
            Appointment.status != AppointmentStatus.COMPLETED.value,
        )
        .order_by(Appointment.id)
        .with_for_update()
    )
    return list(session.scalars(stmt))


def _shift(appointment: Appointment, delta: timedelta, minutes: int, reason: Optional[str]) -> None:
    appointment.scheduled_datetime = appointment.scheduled_datetime + delta
    if appointment.estimated_start_time is not None:
        appointment.estimated_start_time = appointment.estimated_start_time + delta
    appointment.delay_minutes = (appointment.delay_minutes or 0) + minutes
    appointment.delay_reason = reason


def apply_delay(
    session: Session,
    events: EventBuffer,
    doctor_id: str,
    day: date,
    delay_minutes: int,
    reason: Optional[str] = None,
    *,
    max_delay_minutes: int = 720,
) -> List[Appointment]:
    """Shift every appointment of the day that is not completed by ``delay_minutes``.

    All rows change inside the caller's transaction; an exception part-way
    through leaves the rollback to undo every shift already made.
    """

    if (
        not isinstance(delay_minutes, int)
        or isinstance(delay_minutes, bool)
        or not 1 <= delay_minutes <= max_delay_minutes
    ):
        raise ValidationError.single(
            "delay_minutes",
            f"Delay must be a whole number between 1 and {max_delay_minutes} minutes",
        )

    delta = timedelta(minutes=delay_minutes)
    shifted = remaining_appointments(session, doctor_id, day)
    for appointment in shifted:
        _shift(appointment, delta, delay_minutes, reason)
    session.flush()

    for appointment in shifted:
        events.record(
            "appointment",
            appointment.id,
            "delay_applied",
            before_status=appointment.status,
            after_status=appointment.status,
            doctor_id=doctor_id,
            patient_id=appointment.patient_id,
            scheduled_datetime=appointment.scheduled_datetime.isoformat(),
            delay_minutes=delay_minutes,
            total_delay_minutes=appointment.delay_minutes,
            reason=reason,
        )

    LOGGER.info(
        "Applied %s minute delay to %s appointments doctor=%s day=%s",
        delay_minutes,
        len(shifted),
        doctor_id,
        day,
    )
    return shifted
