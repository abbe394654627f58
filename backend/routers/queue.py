"""Queue, delay and emergency routes."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from backend.routers.appointments import AppointmentOut
from backend.routers.dependencies import get_clinic_scope, to_clinic_time
from backend.services.engine import FrontDeskEngine, get_front_desk_engine
from backend.services.events import ClinicScope
from backend.services.queue_view import QueueView

LOGGER = logging.getLogger(__name__)

router = APIRouter()


class QueuePosition(BaseModel):
    appointment_id: int
    queue_position: int


class RecomputeResponse(BaseModel):
    doctor_id: str
    service_day: date
    positions: List[QueuePosition]


class DelayRequest(BaseModel):
    delay_minutes: int
    reason: Optional[str] = None


class DelayResponse(BaseModel):
    doctor_id: str
    service_day: date
    delay_minutes: int
    shifted: List[AppointmentOut]


class EmergencyRequest(BaseModel):
    """Either ``appointment_id`` or both ``doctor_id`` and ``patient_id``."""

    reason: str
    desired_time: datetime
    appointment_id: Optional[int] = None
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    duration_minutes: Optional[int] = None

    @field_validator("desired_time")
    @classmethod
    def _clinic_time(cls, value: datetime) -> datetime:
        return to_clinic_time(value)


class EmergencyResponse(BaseModel):
    created: bool
    appointment: AppointmentOut


class NoShowSweepRequest(BaseModel):
    grace_minutes: Optional[int] = Field(default=None, ge=0)


class NoShowSweepResponse(BaseModel):
    marked: List[int]


@router.get("/doctors/{doctor_id}/days/{day}/queue", response_model=QueueView)
def get_queue(
    doctor_id: str,
    day: date,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> QueueView:
    """Ordered active queue with projected start times."""

    return engine.get_queue(scope, doctor_id, day)


@router.post("/doctors/{doctor_id}/days/{day}/queue/recompute", response_model=RecomputeResponse)
def recompute_queue(
    doctor_id: str,
    day: date,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> RecomputeResponse:
    positions = engine.recompute_queue(scope, doctor_id, day)
    return RecomputeResponse(
        doctor_id=doctor_id,
        service_day=day,
        positions=[
            QueuePosition(appointment_id=appointment_id, queue_position=position)
            for appointment_id, position in positions
        ],
    )


@router.post("/doctors/{doctor_id}/days/{day}/delay", response_model=DelayResponse)
def apply_delay(
    doctor_id: str,
    day: date,
    payload: DelayRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> DelayResponse:
    """Push every remaining appointment of the day back by the same amount."""

    shifted = engine.apply_delay(scope, doctor_id, day, payload.delay_minutes, payload.reason)
    return DelayResponse(
        doctor_id=doctor_id,
        service_day=day,
        delay_minutes=payload.delay_minutes,
        shifted=[AppointmentOut.model_validate(item) for item in shifted],
    )


@router.post("/emergencies", response_model=EmergencyResponse)
def promote_to_emergency(
    payload: EmergencyRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> EmergencyResponse:
    appointment, created = engine.promote_to_emergency(scope, **payload.model_dump())
    LOGGER.info(
        "Emergency handled clinic=%s appointment=%s created=%s",
        scope.clinic_id,
        appointment.id,
        created,
    )
    return EmergencyResponse(
        created=created,
        appointment=AppointmentOut.model_validate(appointment),
    )


@router.post("/maintenance/no-shows", response_model=NoShowSweepResponse)
def mark_overdue_no_shows(
    payload: Optional[NoShowSweepRequest] = None,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> NoShowSweepResponse:
    grace = payload.grace_minutes if payload else None
    overdue = engine.mark_overdue_no_shows(scope, grace)
    return NoShowSweepResponse(marked=[item.id for item in overdue])
