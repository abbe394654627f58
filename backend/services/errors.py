"""Typed errors raised by the queue and slot engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for every error the engine returns to its callers."""

    code = "engine_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        payload.update(self.details())
        return payload


class ValidationError(EngineError):
    """Malformed or out-of-range input.

    Carries every violated field so callers can fix them in one pass.
    """

    code = "validation_error"
    http_status = 422

    def __init__(self, violations: List[Dict[str, str]]) -> None:
        self.violations = list(violations)
        summary = "; ".join(
            f"{item['field']}: {item['message']}" for item in self.violations
        )
        super().__init__(summary or "invalid input")

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}])

    def details(self) -> Dict[str, Any]:
        return {"violations": self.violations}


class SlotError(EngineError):
    """Slot invariant violation."""

    http_status = 409

    def __init__(self, slot_id: int, message: str) -> None:
        super().__init__(message)
        self.slot_id = slot_id

    def details(self) -> Dict[str, Any]:
        return {"slot_id": self.slot_id}


class SlotFullError(SlotError):
    code = "slot_full"

    def __init__(self, slot_id: int, max_capacity: int) -> None:
        super().__init__(slot_id, f"Slot {slot_id} is at maximum capacity ({max_capacity})")
        self.max_capacity = max_capacity


class SlotInactiveError(SlotError):
    code = "slot_inactive"

    def __init__(self, slot_id: int) -> None:
        super().__init__(slot_id, f"Slot {slot_id} is not accepting bookings")


class CapacityBelowBookingsError(SlotError):
    code = "capacity_below_bookings"

    def __init__(self, slot_id: int, requested: int, current_bookings: int) -> None:
        super().__init__(
            slot_id,
            f"Cannot set capacity of slot {slot_id} to {requested}; "
            f"{current_bookings} seats are already booked",
        )
        self.requested = requested
        self.current_bookings = current_bookings

    def details(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "requested": self.requested,
            "current_bookings": self.current_bookings,
        }


class SlotHasBookingsError(SlotError):
    code = "slot_has_bookings"

    def __init__(self, slot_id: int, current_bookings: int) -> None:
        super().__init__(
            slot_id,
            f"Slot {slot_id} still holds {current_bookings} bookings",
        )
        self.current_bookings = current_bookings


class IllegalTransitionError(EngineError):
    """State machine contract violation."""

    code = "illegal_transition"
    http_status = 409

    def __init__(
        self,
        appointment_id: Optional[int],
        current_status: str,
        attempted_status: str,
    ) -> None:
        super().__init__(
            f"Appointment {appointment_id} cannot move from "
            f"{current_status} to {attempted_status}"
        )
        self.appointment_id = appointment_id
        self.current_status = current_status
        self.attempted_status = attempted_status

    def details(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "current_status": self.current_status,
            "attempted_status": self.attempted_status,
        }


class ReferenceNotFoundError(EngineError):
    """Dangling identifier, or a foreign key rejected by the store."""

    code = "reference_not_found"
    http_status = 404

    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier

    def details(self) -> Dict[str, Any]:
        return {"entity": self.entity, "id": self.identifier}


class ConcurrencyConflictError(EngineError):
    """Transaction serialization failure; safe to retry the whole operation."""

    code = "concurrency_conflict"
    http_status = 409
    retryable = True
