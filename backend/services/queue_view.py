"""Read-only queue projection for dashboards."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.models.appointment import Appointment, AppointmentStatus
from backend.services.queue import load_day, order_active

Priority = Literal["normal", "urgent", "emergency"]

EMERGENCY_KEYWORDS = ("emergency", "critical")
URGENT_KEYWORDS = ("urgent", "severe")


class QueueEntry(BaseModel):
    """One active appointment plus metrics derived at query time."""

    id: int
    patient_id: str
    status: str
    queue_position: Optional[int]
    scheduled_datetime: datetime
    estimated_start_time: Optional[datetime]
    duration_minutes: int
    emergency: bool
    emergency_reason: Optional[str]
    slot_id: Optional[int]
    booking_order: Optional[int]
    patient_checked_in: bool
    checked_in_at: Optional[datetime]
    actual_start_time: Optional[datetime]
    delay_minutes: int
    projected_start: datetime
    waiting_minutes: int
    estimated_delay_minutes: int
    priority: Priority


class QueueSummary(BaseModel):
    total_active: int
    checked_in_count: int
    in_progress_count: int
    completed_count: int
    cancelled_count: int
    no_show_count: int
    emergency_count: int
    average_wait_minutes: int
    total_estimated_delay_minutes: int
    total_recorded_delay_minutes: int
    estimated_completion: Optional[datetime]


class QueueView(BaseModel):
    doctor_id: str
    service_day: date
    generated_at: datetime
    entries: List[QueueEntry]
    summary: QueueSummary


def determine_priority(appointment: Appointment) -> Priority:
    symptoms = (appointment.symptoms or "").lower()
    if appointment.emergency or any(word in symptoms for word in EMERGENCY_KEYWORDS):
        return "emergency"
    if any(word in symptoms for word in URGENT_KEYWORDS):
        return "urgent"
    return "normal"


def waiting_minutes(appointment: Appointment, now: datetime) -> int:
    if not appointment.checked_in_at:
        return 0
    until = appointment.actual_start_time or now
    return max(0, int((until - appointment.checked_in_at).total_seconds() // 60))


def _minutes_between(later: datetime, earlier: datetime) -> int:
    return max(0, int((later - earlier).total_seconds() // 60))


def build_queue_view(session: Session, doctor_id: str, day: date, now: datetime) -> QueueView:
    """Project the persisted queue; nothing computed here is written back."""

    appointments = load_day(session, doctor_id, day)
    ordered = order_active(appointments)
    # Positions are only trusted from the last recompute; fall back to the
    # computed order when a concurrent writer has not caught up yet.
    computed = {item.id: index for index, item in enumerate(ordered)}
    ordered.sort(
        key=lambda item: (
            item.queue_position is None,
            item.queue_position or 0,
            computed[item.id],
        )
    )

    entries: List[QueueEntry] = []
    cursor = now
    for item in ordered:
        if item.status == AppointmentStatus.IN_PROGRESS.value and item.actual_start_time:
            projected = item.actual_start_time
        else:
            projected = max(item.scheduled_datetime, cursor)
        cursor = max(cursor, projected + timedelta(minutes=item.duration_minutes))

        entries.append(
            QueueEntry(
                id=item.id,
                patient_id=item.patient_id,
                status=item.status,
                queue_position=item.queue_position,
                scheduled_datetime=item.scheduled_datetime,
                estimated_start_time=item.estimated_start_time,
                duration_minutes=item.duration_minutes,
                emergency=item.emergency,
                emergency_reason=item.emergency_reason,
                slot_id=item.slot_id,
                booking_order=item.booking_order,
                patient_checked_in=item.patient_checked_in,
                checked_in_at=item.checked_in_at,
                actual_start_time=item.actual_start_time,
                delay_minutes=item.delay_minutes,
                projected_start=projected,
                waiting_minutes=waiting_minutes(item, now),
                estimated_delay_minutes=_minutes_between(projected, item.scheduled_datetime),
                priority=determine_priority(item),
            )
        )

    return QueueView(
        doctor_id=doctor_id,
        service_day=day,
        generated_at=now,
        entries=entries,
        summary=_summarize(appointments, entries, now),
    )


def _summarize(
    appointments: List[Appointment],
    entries: List[QueueEntry],
    now: datetime,
) -> QueueSummary:
    def count(status: AppointmentStatus) -> int:
        return sum(1 for item in appointments if item.status == status.value)

    waits = [entry.waiting_minutes for entry in entries if entry.waiting_minutes > 0]
    average_wait = round(sum(waits) / len(waits)) if waits else 0

    estimated_completion: Optional[datetime] = None
    current = next(
        (entry for entry in entries if entry.status == AppointmentStatus.IN_PROGRESS.value),
        None,
    )
    if current is not None and current.queue_position is not None:
        remaining = sum(
            entry.duration_minutes
            for entry in entries
            if entry.queue_position is not None and entry.queue_position > current.queue_position
        )
        estimated_completion = now + timedelta(minutes=remaining)

    return QueueSummary(
        total_active=len(entries),
        checked_in_count=sum(1 for entry in entries if entry.patient_checked_in),
        in_progress_count=count(AppointmentStatus.IN_PROGRESS),
        completed_count=count(AppointmentStatus.COMPLETED),
        cancelled_count=count(AppointmentStatus.CANCELLED),
        no_show_count=count(AppointmentStatus.NO_SHOW),
        emergency_count=sum(1 for item in appointments if item.emergency),
        average_wait_minutes=average_wait,
        total_estimated_delay_minutes=sum(entry.estimated_delay_minutes for entry in entries),
        total_recorded_delay_minutes=sum(entry.delay_minutes for entry in entries),
        estimated_completion=estimated_completion,
    )
