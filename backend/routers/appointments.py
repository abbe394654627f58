"""Appointment booking and status transition routes."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.routers.dependencies import get_clinic_scope, to_clinic_time
from backend.routers.slots import SlotBookingOut
from backend.services.engine import FrontDeskEngine, get_front_desk_engine
from backend.services.events import ClinicScope

LOGGER = logging.getLogger(__name__)

router = APIRouter()


class AppointmentOut(BaseModel):
    """Stored appointment state as seen by the front desk."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    doctor_id: str
    patient_id: str
    service_day: date
    scheduled_datetime: datetime
    estimated_start_time: Optional[datetime] = None
    duration_minutes: int
    status: str
    queue_position: Optional[int] = None
    patient_checked_in: bool
    checked_in_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    emergency: bool
    emergency_reason: Optional[str] = None
    delay_minutes: int
    delay_reason: Optional[str] = None
    slot_id: Optional[int] = None
    booking_order: Optional[int] = None
    rescheduled_from_id: Optional[int] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    cancellation_reason: Optional[str] = None


class BookAppointmentRequest(BaseModel):
    doctor_id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)
    scheduled_datetime: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    slot_id: Optional[int] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("scheduled_datetime")
    @classmethod
    def _clinic_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_clinic_time(value)


class CompleteRequest(BaseModel):
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_datetime: Optional[datetime] = None
    new_slot_id: Optional[int] = None

    @field_validator("new_datetime")
    @classmethod
    def _clinic_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_clinic_time(value)


class BookSlotRequest(BaseModel):
    slot_id: int


class ReleaseSlotResponse(BaseModel):
    appointment_id: int
    released: bool


@router.post("", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def book_appointment(
    payload: BookAppointmentRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    """Book an appointment, taking a slot seat when ``slot_id`` is given."""

    LOGGER.debug(
        "Booking request clinic=%s doctor=%s patient=%s slot=%s",
        scope.clinic_id,
        payload.doctor_id,
        payload.patient_id,
        payload.slot_id,
    )
    appointment = engine.book_appointment(scope, **payload.model_dump())
    return AppointmentOut.model_validate(appointment)


@router.get("/{appointment_id}", response_model=AppointmentOut)
def get_appointment(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    return AppointmentOut.model_validate(engine.get_appointment(scope, appointment_id))


@router.delete("/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_appointment(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> Response:
    """Same-day administrative removal."""

    engine.remove_appointment(scope, appointment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{appointment_id}/check-in", response_model=AppointmentOut)
def check_in(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    return AppointmentOut.model_validate(engine.check_in(scope, appointment_id))


@router.post("/{appointment_id}/start", response_model=AppointmentOut)
def start(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    return AppointmentOut.model_validate(engine.start(scope, appointment_id))


@router.post("/{appointment_id}/complete", response_model=AppointmentOut)
def complete(
    appointment_id: int,
    payload: Optional[CompleteRequest] = None,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    payload = payload or CompleteRequest()
    appointment = engine.complete(scope, appointment_id, **payload.model_dump())
    return AppointmentOut.model_validate(appointment)


@router.post("/{appointment_id}/no-show", response_model=AppointmentOut)
def mark_no_show(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    return AppointmentOut.model_validate(engine.mark_no_show(scope, appointment_id))


@router.post("/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel(
    appointment_id: int,
    payload: Optional[CancelRequest] = None,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    reason = payload.reason if payload else None
    return AppointmentOut.model_validate(engine.cancel(scope, appointment_id, reason))


@router.post("/{appointment_id}/reschedule", response_model=AppointmentOut)
def reschedule(
    appointment_id: int,
    payload: RescheduleRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> AppointmentOut:
    """Close the appointment as rescheduled and return the new booking."""

    replacement = engine.reschedule(
        scope,
        appointment_id,
        new_datetime=payload.new_datetime,
        new_slot_id=payload.new_slot_id,
    )
    return AppointmentOut.model_validate(replacement)


@router.post("/{appointment_id}/book-slot", response_model=SlotBookingOut)
def book_slot(
    appointment_id: int,
    payload: BookSlotRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> SlotBookingOut:
    booking = engine.book_slot(scope, payload.slot_id, appointment_id)
    return SlotBookingOut.model_validate(booking)


@router.post("/{appointment_id}/release-slot", response_model=ReleaseSlotResponse)
def release_slot(
    appointment_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> ReleaseSlotResponse:
    released = engine.release_slot(scope, appointment_id)
    return ReleaseSlotResponse(appointment_id=appointment_id, released=released)
