"""Slot registry routes."""

from __future__ import annotations

import datetime as dt
import logging
from datetime import date, datetime, time
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from backend.routers.dependencies import get_clinic_scope
from backend.services.engine import FrontDeskEngine, get_front_desk_engine
from backend.services.events import ClinicScope
from backend.services.slots import SlotSpec

LOGGER = logging.getLogger(__name__)

router = APIRouter()


class SlotIn(BaseModel):
    """One slot definition in a batch create."""

    name: str
    start_time: time
    end_time: time
    max_capacity: int


class CreateSlotsRequest(BaseModel):
    slots: List[SlotIn] = Field(default_factory=list)


class SlotUpdateRequest(BaseModel):
    """Only the fields present in the body are changed."""

    name: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    max_capacity: Optional[int] = None


class BulkActiveRequest(BaseModel):
    slot_ids: List[int] = Field(min_length=1)
    active: bool


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    doctor_id: str
    date: dt.date
    name: str
    start_time: time
    end_time: time
    max_capacity: int
    current_bookings: int
    available_seats: int
    active: bool


class SlotBookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slot_id: int
    appointment_id: int
    booking_order: int
    created_at: datetime


class SlotStatisticsOut(BaseModel):
    total_slots: int
    total_capacity: int
    total_bookings: int
    average_utilization: float


@router.post(
    "/doctors/{doctor_id}/days/{day}/slots",
    response_model=List[SlotOut],
    status_code=status.HTTP_201_CREATED,
)
def create_slots(
    doctor_id: str,
    day: date,
    payload: CreateSlotsRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> List[SlotOut]:
    """Create a batch of slots; nothing is stored if any slot is invalid."""

    specs = [
        SlotSpec(
            name=item.name,
            start_time=item.start_time,
            end_time=item.end_time,
            max_capacity=item.max_capacity,
        )
        for item in payload.slots
    ]
    slots = engine.create_slots(scope, doctor_id, day, specs)
    return [SlotOut.model_validate(slot) for slot in slots]


@router.get("/doctors/{doctor_id}/days/{day}/slots", response_model=List[SlotOut])
def list_slots(
    doctor_id: str,
    day: date,
    available_only: bool = Query(default=False),
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> List[SlotOut]:
    slots = engine.list_slots(scope, doctor_id, day, available_only=available_only)
    return [SlotOut.model_validate(slot) for slot in slots]


@router.get("/doctors/{doctor_id}/slot-statistics", response_model=SlotStatisticsOut)
def slot_statistics(
    doctor_id: str,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> SlotStatisticsOut:
    stats = engine.slot_statistics(scope, doctor_id, start_date, end_date)
    return SlotStatisticsOut(**stats)


@router.post("/slots/bulk-active", response_model=List[SlotOut])
def bulk_set_active(
    payload: BulkActiveRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> List[SlotOut]:
    slots = engine.bulk_set_active(scope, payload.slot_ids, payload.active)
    return [SlotOut.model_validate(slot) for slot in slots]


@router.get("/slots/{slot_id}", response_model=SlotOut)
def get_slot(
    slot_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> SlotOut:
    return SlotOut.model_validate(engine.get_slot(scope, slot_id))


@router.patch("/slots/{slot_id}", response_model=SlotOut)
def update_slot(
    slot_id: int,
    payload: SlotUpdateRequest,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> SlotOut:
    fields = payload.model_dump(exclude_unset=True, exclude_none=True)
    LOGGER.debug("Slot %s edit requested fields=%s", slot_id, sorted(fields))
    return SlotOut.model_validate(engine.update_slot(scope, slot_id, fields))


@router.delete("/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    slot_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> Response:
    engine.delete_slot(scope, slot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/slots/{slot_id}/bookings", response_model=List[SlotBookingOut])
def slot_bookings(
    slot_id: int,
    scope: ClinicScope = Depends(get_clinic_scope),
    engine: FrontDeskEngine = Depends(get_front_desk_engine),
) -> List[SlotBookingOut]:
    bookings = engine.slot_bookings(scope, slot_id)
    return [SlotBookingOut.model_validate(item) for item in bookings]
