"""Emergency insertion at the front of a doctor's queue."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.models.appointment import ACTIVE_STATUS_VALUES, Appointment, AppointmentStatus
from backend.services.appointments import MAX_DURATION_MINUTES, get_appointment
from backend.services.errors import IllegalTransitionError, ValidationError
from backend.services.events import EventBuffer

LOGGER = logging.getLogger(__name__)

EMERGENCY_MARKER = "emergency"


def find_active_appointment(
    session: Session,
    doctor_id: str,
    patient_id: str,
    day: date,
) -> Optional[Appointment]:
    stmt = (
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.patient_id == patient_id,
            Appointment.service_day == day,
            Appointment.status.in_(ACTIVE_STATUS_VALUES),
        )
        .order_by(Appointment.scheduled_datetime, Appointment.id)
        .limit(1)
        .with_for_update()
    )
    return session.scalars(stmt).first()


def promote_to_emergency(
    session: Session,
    events: EventBuffer,
    *,
    reason: str,
    desired_time: datetime,
    appointment_id: Optional[int] = None,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    duration_minutes: int = 30,
) -> Tuple[Appointment, bool]:
    """Flag an appointment as an emergency, creating one when needed.

    Returns the appointment and whether it was newly created. Emergency
    appointments are never slot-bound so they bypass slot capacity.
    """

    violations = []
    if not reason or not reason.strip():
        violations.append({"field": "reason", "message": "Emergency reason is required"})
    if desired_time is None:
        violations.append({"field": "desired_time", "message": "Desired time is required"})
    if appointment_id is None and not (doctor_id and patient_id):
        violations.append(
            {
                "field": "appointment_id",
                "message": "Provide an appointment or both doctor_id and patient_id",
            }
        )
    if not 1 <= duration_minutes <= MAX_DURATION_MINUTES:
        violations.append(
            {
                "field": "duration_minutes",
                "message": f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes",
            }
        )
    if violations:
        raise ValidationError(violations)

    reason = reason.strip()
    if appointment_id is not None:
        appointment = get_appointment(session, appointment_id, for_update=True)
        if not appointment.is_active:
            raise IllegalTransitionError(appointment.id, appointment.status, EMERGENCY_MARKER)
    else:
        appointment = find_active_appointment(
            session, doctor_id, patient_id, desired_time.date()
        )

    if appointment is not None:
        if desired_time.date() != appointment.service_day:
            raise ValidationError.single(
                "desired_time",
                "Emergency time must fall on the appointment's day",
            )
        already = appointment.emergency
        appointment.emergency = True
        appointment.emergency_reason = reason
        appointment.scheduled_datetime = desired_time
        appointment.estimated_start_time = desired_time
        session.flush()
        events.record(
            "appointment",
            appointment.id,
            "emergency_updated" if already else "emergency_promoted",
            before_status=appointment.status,
            after_status=appointment.status,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            reason=reason,
            scheduled_datetime=desired_time.isoformat(),
        )
        LOGGER.info(
            "Appointment %s %s as emergency",
            appointment.id,
            "refreshed" if already else "promoted",
        )
        return appointment, False

    appointment = Appointment(
        doctor_id=doctor_id,
        patient_id=patient_id,
        service_day=desired_time.date(),
        scheduled_datetime=desired_time,
        estimated_start_time=desired_time,
        duration_minutes=duration_minutes,
        status=AppointmentStatus.SCHEDULED.value,
        patient_checked_in=False,
        emergency=True,
        emergency_reason=reason,
        delay_minutes=0,
    )
    session.add(appointment)
    session.flush()
    events.record(
        "appointment",
        appointment.id,
        "emergency_created",
        after_status=appointment.status,
        doctor_id=doctor_id,
        patient_id=patient_id,
        reason=reason,
        scheduled_datetime=desired_time.isoformat(),
    )
    LOGGER.info(
        "Created emergency appointment=%s doctor=%s patient=%s",
        appointment.id,
        doctor_id,
        patient_id,
    )
    return appointment, True
