"""Appointment model definition."""

from __future__ import annotations

import datetime as dt
import enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, utcnow

if TYPE_CHECKING:
    from backend.models.slot import DoctorSlot, SlotBooking
else:  # pragma: no cover - typing runtime fallback
    DoctorSlot = "DoctorSlot"  # type: ignore[assignment]
    SlotBooking = "SlotBooking"  # type: ignore[assignment]


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked-in"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"
    RESCHEDULED = "rescheduled"


ACTIVE_STATUSES = frozenset(
    {
        AppointmentStatus.SCHEDULED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
    }
)
ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class Appointment(Base):
    """Represents one patient visit in a doctor's day queue."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_day_status", "doctor_id", "service_day", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_day: Mapped[dt.date] = mapped_column(Date, nullable=False)
    scheduled_datetime: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        default=AppointmentStatus.SCHEDULED.value,
        nullable=False,
    )

    patient_checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_in_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    actual_start_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    actual_end_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    estimated_start_time: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime,
        nullable=True,
    )
    queue_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    emergency: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    emergency_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delay_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delay_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    slot_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("doctor_slots.id"),
        nullable=True,
        index=True,
    )
    rescheduled_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    )

    symptoms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prescription: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    slot: Mapped[Optional["DoctorSlot"]] = relationship()
    slot_booking: Mapped[Optional["SlotBooking"]] = relationship(
        back_populates="appointment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUS_VALUES

    @property
    def booking_order(self) -> Optional[int]:
        return self.slot_booking.booking_order if self.slot_booking else None
