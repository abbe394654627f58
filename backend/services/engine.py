"""Front-desk facade: one transaction per operation, events after commit."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, sessionmaker

from backend.models.appointment import Appointment
from backend.models.slot import DoctorSlot, SlotBooking
from backend.services import appointments as appointment_service
from backend.services import delay as delay_service
from backend.services import emergency as emergency_service
from backend.services import slots as slot_service
from backend.services.db import build_session_factory, get_engine, get_session
from backend.services.events import ChangeNotifier, ClinicScope, EventBuffer, build_notifier
from backend.services.queue import recompute_queue
from backend.services.queue_view import QueueView, build_queue_view
from backend.utils.config import Settings, get_settings

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def clinic_clock(timezone: str) -> Clock:
    """Naive wall-clock "now" in the clinic's timezone."""

    zone = ZoneInfo(timezone)

    def _now() -> datetime:
        return datetime.now(zone).replace(tzinfo=None, microsecond=0)

    return _now


class FrontDeskEngine:
    """Entry point for every front-desk action on slots and queues.

    Each public method is one unit of work: the mutation, the queue
    recompute of every affected doctor/day and the commit happen together;
    change events are handed to the notifier only once the commit succeeded.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: ChangeNotifier,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.notifier = notifier
        self.clock = clock or clinic_clock(self.settings.clinic_timezone)

    @contextmanager
    def _unit_of_work(self, scope: ClinicScope) -> Iterator[Tuple[Session, EventBuffer]]:
        events = EventBuffer(scope)
        with get_session(self._session_factory) as session:
            yield session, events
        if events.events:
            LOGGER.debug(
                "Committed unit of work clinic=%s actor=%s events=%s",
                scope.clinic_id,
                scope.actor,
                len(events),
            )
        self.notifier.publish(events.events)

    @staticmethod
    def _recompute(
        session: Session,
        events: EventBuffer,
        days: Iterable[Tuple[str, date]],
    ) -> None:
        seen: Set[Tuple[str, date]] = set()
        for doctor_id, day in days:
            if (doctor_id, day) in seen:
                continue
            seen.add((doctor_id, day))
            recompute_queue(session, events, doctor_id, day)

    # ------------------------------------------------------------------
    # Slot registry
    # ------------------------------------------------------------------
    def create_slots(
        self,
        scope: ClinicScope,
        doctor_id: str,
        day: date,
        specs: Sequence[slot_service.SlotSpec],
    ) -> List[DoctorSlot]:
        with self._unit_of_work(scope) as (session, events):
            return slot_service.create_slots(session, events, doctor_id, day, specs)

    def update_slot(self, scope: ClinicScope, slot_id: int, fields: Dict[str, Any]) -> DoctorSlot:
        with self._unit_of_work(scope) as (session, events):
            return slot_service.update_slot(session, events, slot_id, fields)

    def delete_slot(self, scope: ClinicScope, slot_id: int) -> None:
        with self._unit_of_work(scope) as (session, events):
            slot_service.delete_slot(session, events, slot_id)

    def bulk_set_active(
        self,
        scope: ClinicScope,
        slot_ids: Iterable[int],
        active: bool,
    ) -> List[DoctorSlot]:
        with self._unit_of_work(scope) as (session, events):
            return slot_service.bulk_set_active(session, events, slot_ids, active)

    def get_slot(self, scope: ClinicScope, slot_id: int) -> DoctorSlot:
        with self._unit_of_work(scope) as (session, _events):
            return slot_service.get_slot(session, slot_id)

    def list_slots(
        self,
        scope: ClinicScope,
        doctor_id: str,
        day: date,
        *,
        available_only: bool = False,
    ) -> List[DoctorSlot]:
        with self._unit_of_work(scope) as (session, _events):
            return slot_service.list_slots(session, doctor_id, day, available_only=available_only)

    def slot_bookings(self, scope: ClinicScope, slot_id: int) -> List[SlotBooking]:
        with self._unit_of_work(scope) as (session, _events):
            return slot_service.slot_bookings(session, slot_id)

    def slot_statistics(
        self,
        scope: ClinicScope,
        doctor_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        with self._unit_of_work(scope) as (session, _events):
            return slot_service.slot_statistics(session, doctor_id, start_date, end_date)

    # ------------------------------------------------------------------
    # Booking ledger
    # ------------------------------------------------------------------
    def book_appointment(
        self,
        scope: ClinicScope,
        *,
        doctor_id: str,
        patient_id: str,
        scheduled_datetime: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
        slot_id: Optional[int] = None,
        symptoms: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        with self._unit_of_work(scope) as (session, events):
            appointment = appointment_service.book_appointment(
                session,
                events,
                doctor_id=doctor_id,
                patient_id=patient_id,
                scheduled_datetime=scheduled_datetime,
                duration_minutes=duration_minutes or self.settings.default_duration_minutes,
                slot_id=slot_id,
                symptoms=symptoms,
                notes=notes,
            )
            self._recompute(session, events, [(appointment.doctor_id, appointment.service_day)])
            return appointment

    def book_slot(self, scope: ClinicScope, slot_id: int, appointment_id: int) -> SlotBooking:
        with self._unit_of_work(scope) as (session, events):
            appointment = appointment_service.get_appointment(
                session, appointment_id, for_update=True
            )
            booking = slot_service.book_slot(session, events, slot_id, appointment)
            self._recompute(session, events, [(appointment.doctor_id, appointment.service_day)])
            return booking

    def release_slot(self, scope: ClinicScope, appointment_id: int) -> bool:
        """Administrative seat release; the appointment keeps its status."""

        with self._unit_of_work(scope) as (session, events):
            released = appointment_service.release_seat(session, events, appointment_id)
            appointment = appointment_service.get_appointment(session, appointment_id)
            self._recompute(session, events, [(appointment.doctor_id, appointment.service_day)])
            return released

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _apply_transition(
        self,
        scope: ClinicScope,
        operation: Callable[..., Appointment],
        appointment_id: int,
        **kwargs: Any,
    ) -> Appointment:
        with self._unit_of_work(scope) as (session, events):
            appointment = operation(session, events, appointment_id, self.clock(), **kwargs)
            self._recompute(session, events, [(appointment.doctor_id, appointment.service_day)])
            return appointment

    def check_in(self, scope: ClinicScope, appointment_id: int) -> Appointment:
        return self._apply_transition(scope, appointment_service.check_in, appointment_id)

    def start(self, scope: ClinicScope, appointment_id: int) -> Appointment:
        return self._apply_transition(scope, appointment_service.start, appointment_id)

    def complete(
        self,
        scope: ClinicScope,
        appointment_id: int,
        *,
        diagnosis: Optional[str] = None,
        prescription: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        return self._apply_transition(
            scope,
            appointment_service.complete,
            appointment_id,
            diagnosis=diagnosis,
            prescription=prescription,
            notes=notes,
        )

    def mark_no_show(self, scope: ClinicScope, appointment_id: int) -> Appointment:
        return self._apply_transition(scope, appointment_service.mark_no_show, appointment_id)

    def cancel(
        self,
        scope: ClinicScope,
        appointment_id: int,
        reason: Optional[str] = None,
    ) -> Appointment:
        return self._apply_transition(
            scope, appointment_service.cancel, appointment_id, reason=reason
        )

    def reschedule(
        self,
        scope: ClinicScope,
        appointment_id: int,
        *,
        new_datetime: Optional[datetime] = None,
        new_slot_id: Optional[int] = None,
    ) -> Appointment:
        with self._unit_of_work(scope) as (session, events):
            original = appointment_service.get_appointment(session, appointment_id)
            old_day = (original.doctor_id, original.service_day)
            replacement = appointment_service.reschedule(
                session,
                events,
                appointment_id,
                self.clock(),
                new_datetime=new_datetime,
                new_slot_id=new_slot_id,
            )
            self._recompute(
                session,
                events,
                [old_day, (replacement.doctor_id, replacement.service_day)],
            )
            return replacement

    def remove_appointment(self, scope: ClinicScope, appointment_id: int) -> None:
        with self._unit_of_work(scope) as (session, events):
            removed = appointment_service.remove_appointment(
                session, events, appointment_id, self.clock().date()
            )
            self._recompute(session, events, [(removed.doctor_id, removed.service_day)])

    def get_appointment(self, scope: ClinicScope, appointment_id: int) -> Appointment:
        with self._unit_of_work(scope) as (session, _events):
            return appointment_service.get_appointment(session, appointment_id)

    def mark_overdue_no_shows(
        self,
        scope: ClinicScope,
        grace_minutes: Optional[int] = None,
    ) -> List[Appointment]:
        if grace_minutes is None:
            grace_minutes = self.settings.no_show_grace_minutes
        with self._unit_of_work(scope) as (session, events):
            overdue = appointment_service.mark_overdue_no_shows(
                session, events, self.clock(), grace_minutes
            )
            self._recompute(
                session,
                events,
                [(item.doctor_id, item.service_day) for item in overdue],
            )
            return overdue

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------
    def recompute_queue(
        self,
        scope: ClinicScope,
        doctor_id: str,
        day: date,
    ) -> List[Tuple[int, int]]:
        with self._unit_of_work(scope) as (session, events):
            return recompute_queue(session, events, doctor_id, day)

    def apply_delay(
        self,
        scope: ClinicScope,
        doctor_id: str,
        day: date,
        delay_minutes: int,
        reason: Optional[str] = None,
    ) -> List[Appointment]:
        with self._unit_of_work(scope) as (session, events):
            shifted = delay_service.apply_delay(
                session,
                events,
                doctor_id,
                day,
                delay_minutes,
                reason,
                max_delay_minutes=self.settings.max_delay_minutes,
            )
            self._recompute(session, events, [(doctor_id, day)])
            return shifted

    def promote_to_emergency(
        self,
        scope: ClinicScope,
        *,
        reason: str,
        desired_time: datetime,
        appointment_id: Optional[int] = None,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> Tuple[Appointment, bool]:
        with self._unit_of_work(scope) as (session, events):
            appointment, created = emergency_service.promote_to_emergency(
                session,
                events,
                reason=reason,
                desired_time=desired_time,
                appointment_id=appointment_id,
                doctor_id=doctor_id,
                patient_id=patient_id,
                duration_minutes=duration_minutes or self.settings.default_duration_minutes,
            )
            self._recompute(session, events, [(appointment.doctor_id, appointment.service_day)])
            return appointment, created

    def get_queue(self, scope: ClinicScope, doctor_id: str, day: date) -> QueueView:
        with self._unit_of_work(scope) as (session, _events):
            return build_queue_view(session, doctor_id, day, self.clock())


@lru_cache()
def get_front_desk_engine() -> FrontDeskEngine:
    """Return the process-wide engine wired from settings."""

    settings = get_settings()
    return FrontDeskEngine(
        build_session_factory(get_engine()),
        build_notifier(settings),
        settings=settings,
    )
