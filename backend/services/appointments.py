"""Appointment state machine."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment, AppointmentStatus
from backend.services import slots as slot_service
from backend.services.errors import (
    IllegalTransitionError,
    ReferenceNotFoundError,
    ValidationError,
)
from backend.services.events import EventBuffer

LOGGER = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 480

TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {
            AppointmentStatus.CHECKED_IN,
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.NO_SHOW,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.RESCHEDULED,
        }
    ),
    AppointmentStatus.CHECKED_IN: frozenset(
        {
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.NO_SHOW,
            AppointmentStatus.CANCELLED,
        }
    ),
    AppointmentStatus.IN_PROGRESS: frozenset(
        {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
        }
    ),
}

TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }
)

SEAT_KEEPING_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED.value,
        AppointmentStatus.NO_SHOW.value,
    }
)


def can_transition(current: str, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS.get(AppointmentStatus(current), frozenset())


def get_appointment(
    session: Session,
    appointment_id: int,
    *,
    for_update: bool = False,
) -> Appointment:
    appointment = session.get(Appointment, appointment_id, with_for_update=for_update)
    if appointment is None:
        raise ReferenceNotFoundError("appointment", appointment_id)
    return appointment


def _transition(
    events: EventBuffer,
    appointment: Appointment,
    target: AppointmentStatus,
    now: datetime,
    **payload: object,
) -> None:
    current = appointment.status
    if not can_transition(current, target):
        LOGGER.warning(
            "Rejected transition appointment=%s %s->%s",
            appointment.id,
            current,
            target.value,
        )
        raise IllegalTransitionError(appointment.id, current, target.value)

    appointment.status = target.value
    events.record(
        "appointment",
        appointment.id,
        "status_changed",
        before_status=current,
        after_status=target.value,
        appointment_id=appointment.id,
        from_status=current,
        to_status=target.value,
        timestamp=now.isoformat(),
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
        **payload,
    )
    LOGGER.info(
        "Appointment %s moved %s -> %s",
        appointment.id,
        current,
        target.value,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def book_appointment(
    session: Session,
    events: EventBuffer,
    *,
    doctor_id: str,
    patient_id: str,
    scheduled_datetime: Optional[datetime] = None,
    duration_minutes: int = 30,
    slot_id: Optional[int] = None,
    symptoms: Optional[str] = None,
    notes: Optional[str] = None,
) -> Appointment:
    """Create a scheduled appointment, optionally taking a seat in a slot."""

    service_day: Optional[date] = None
    if slot_id is not None:
        slot = slot_service.get_slot(session, slot_id)
        service_day = slot.date
        if scheduled_datetime is None:
            scheduled_datetime = slot.starts_at

    violations = []
    if not doctor_id:
        violations.append({"field": "doctor_id", "message": "Doctor is required"})
    if not patient_id:
        violations.append({"field": "patient_id", "message": "Patient is required"})
    if scheduled_datetime is None:
        violations.append(
            {"field": "scheduled_datetime", "message": "Required when no slot is given"}
        )
    elif service_day is not None and scheduled_datetime.date() != service_day:
        violations.append(
            {"field": "scheduled_datetime", "message": "Must fall on the slot's date"}
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

    appointment = Appointment(
        doctor_id=doctor_id,
        patient_id=patient_id,
        service_day=scheduled_datetime.date(),
        scheduled_datetime=scheduled_datetime,
        estimated_start_time=scheduled_datetime,
        duration_minutes=duration_minutes,
        status=AppointmentStatus.SCHEDULED.value,
        patient_checked_in=False,
        emergency=False,
        delay_minutes=0,
        symptoms=symptoms,
        notes=notes,
    )
    session.add(appointment)
    session.flush()

    events.record(
        "appointment",
        appointment.id,
        "appointment_booked",
        after_status=appointment.status,
        doctor_id=doctor_id,
        patient_id=patient_id,
        scheduled_datetime=scheduled_datetime.isoformat(),
    )

    if slot_id is not None:
        slot_service.book_slot(session, events, slot_id, appointment)

    LOGGER.info(
        "Booked appointment=%s doctor=%s patient=%s at %s",
        appointment.id,
        doctor_id,
        patient_id,
        appointment.scheduled_datetime,
    )
    return appointment


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def check_in(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
) -> Appointment:
    appointment = get_appointment(session, appointment_id, for_update=True)
    if appointment.status == AppointmentStatus.CHECKED_IN.value:
        LOGGER.debug("Appointment %s already checked in", appointment.id)
        return appointment

    _transition(events, appointment, AppointmentStatus.CHECKED_IN, now)
    appointment.patient_checked_in = True
    appointment.checked_in_at = now
    session.flush()
    return appointment


def start(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
) -> Appointment:
    appointment = get_appointment(session, appointment_id, for_update=True)
    _transition(events, appointment, AppointmentStatus.IN_PROGRESS, now)
    appointment.actual_start_time = now
    session.flush()
    return appointment


def complete(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
    *,
    diagnosis: Optional[str] = None,
    prescription: Optional[str] = None,
    notes: Optional[str] = None,
) -> Appointment:
    appointment = get_appointment(session, appointment_id, for_update=True)
    _transition(events, appointment, AppointmentStatus.COMPLETED, now)
    appointment.actual_end_time = now
    if diagnosis is not None:
        appointment.diagnosis = diagnosis
    if prescription is not None:
        appointment.prescription = prescription
    if notes is not None:
        appointment.notes = notes
    session.flush()
    return appointment


def mark_no_show(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
) -> Appointment:
    """No-shows keep their seat: the slot's capacity was spent for the day."""

    appointment = get_appointment(session, appointment_id, for_update=True)
    _transition(events, appointment, AppointmentStatus.NO_SHOW, now)
    session.flush()
    return appointment


def cancel(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
    *,
    reason: Optional[str] = None,
) -> Appointment:
    appointment = get_appointment(session, appointment_id, for_update=True)
    _transition(events, appointment, AppointmentStatus.CANCELLED, now, reason=reason)
    appointment.cancellation_reason = reason
    slot_service.release_slot(session, events, appointment)
    session.flush()
    return appointment


def reschedule(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    now: datetime,
    *,
    new_datetime: Optional[datetime] = None,
    new_slot_id: Optional[int] = None,
) -> Appointment:
    """Close the original as ``rescheduled`` and return its replacement."""

    original = get_appointment(session, appointment_id, for_update=True)
    if new_datetime is None and new_slot_id is None:
        raise ValidationError.single(
            "new_datetime",
            "A new time or a new slot is required",
        )

    _transition(
        events,
        original,
        AppointmentStatus.RESCHEDULED,
        now,
        new_datetime=new_datetime.isoformat() if new_datetime else None,
        new_slot_id=new_slot_id,
    )
    slot_service.release_slot(session, events, original)
    session.flush()

    replacement = book_appointment(
        session,
        events,
        doctor_id=original.doctor_id,
        patient_id=original.patient_id,
        scheduled_datetime=new_datetime,
        duration_minutes=original.duration_minutes,
        slot_id=new_slot_id,
        symptoms=original.symptoms,
        notes=original.notes,
    )
    replacement.rescheduled_from_id = original.id
    session.flush()
    return replacement


def release_seat(session: Session, events: EventBuffer, appointment_id: int) -> bool:
    """Administrative seat release; completed and no-show visits keep theirs."""

    appointment = get_appointment(session, appointment_id, for_update=True)
    if appointment.status in SEAT_KEEPING_STATUSES:
        LOGGER.warning(
            "Rejected seat release for appointment=%s status=%s",
            appointment.id,
            appointment.status,
        )
        raise IllegalTransitionError(appointment.id, appointment.status, "released")
    return slot_service.release_slot(session, events, appointment)


def remove_appointment(
    session: Session,
    events: EventBuffer,
    appointment_id: int,
    today: date,
) -> Appointment:
    """Administrative same-day correction: free the seat and delete the row."""

    appointment = get_appointment(session, appointment_id, for_update=True)
    if appointment.service_day != today:
        raise ValidationError.single(
            "appointment_id",
            "Only appointments for the current day can be removed",
        )

    slot_service.release_slot(session, events, appointment)
    session.delete(appointment)
    session.flush()
    events.record(
        "appointment",
        appointment_id,
        "appointment_removed",
        before_status=appointment.status,
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
    )
    LOGGER.info("Removed appointment=%s", appointment_id)
    return appointment


def mark_overdue_no_shows(
    session: Session,
    events: EventBuffer,
    now: datetime,
    grace_minutes: int,
) -> List[Appointment]:
    """Turn scheduled appointments past their grace period into no-shows."""

    cutoff = now - timedelta(minutes=grace_minutes)
    stmt = (
        select(Appointment)
        .where(
            Appointment.status == AppointmentStatus.SCHEDULED.value,
            Appointment.scheduled_datetime < cutoff,
        )
        .order_by(Appointment.id)
        .with_for_update()
    )
    overdue = list(session.scalars(stmt))
    for appointment in overdue:
        _transition(
            events,
            appointment,
            AppointmentStatus.NO_SHOW,
            now,
            automatic=True,
        )
    session.flush()
    if overdue:
        LOGGER.info("Marked %s overdue appointments as no-show", len(overdue))
    return overdue
