"""Doctor slot and slot booking ORM models."""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, utcnow

if TYPE_CHECKING:
    from backend.models.appointment import Appointment

MIN_SLOT_CAPACITY = 1
MAX_SLOT_CAPACITY = 50
MAX_SLOT_NAME_LENGTH = 50


class DoctorSlot(Base):
    """A bookable time window for one doctor on one date."""

    __tablename__ = "doctor_slots"
    __table_args__ = (
        CheckConstraint(
            f"max_capacity >= {MIN_SLOT_CAPACITY} AND max_capacity <= {MAX_SLOT_CAPACITY}",
            name="doctor_slots_capacity_check",
        ),
        CheckConstraint(
            "current_bookings >= 0 AND current_bookings <= max_capacity",
            name="doctor_slots_current_bookings_check",
        ),
        CheckConstraint("end_time > start_time", name="doctor_slots_time_check"),
        UniqueConstraint("doctor_id", "date", "name", name="doctor_slots_name_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(MAX_SLOT_NAME_LENGTH), nullable=False)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    max_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    current_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Only ever incremented so that booking orders are never handed out twice.
    last_booking_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
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

    bookings: Mapped[List["SlotBooking"]] = relationship(
        back_populates="slot",
        order_by="SlotBooking.booking_order",
    )

    @property
    def available_seats(self) -> int:
        return self.max_capacity - self.current_bookings

    @property
    def starts_at(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.start_time)


class SlotBooking(Base):
    """Ledger row tying one appointment to its ordinal seat in a slot."""

    __tablename__ = "slot_bookings"
    __table_args__ = (
        CheckConstraint("booking_order > 0", name="slot_bookings_booking_order_check"),
        UniqueConstraint("slot_id", "booking_order", name="slot_bookings_order_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    slot_id: Mapped[int] = mapped_column(
        ForeignKey("doctor_slots.id"),
        nullable=False,
        index=True,
    )
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    booking_order: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    slot: Mapped["DoctorSlot"] = relationship(back_populates="bookings")
    appointment: Mapped["Appointment"] = relationship(back_populates="slot_booking")
