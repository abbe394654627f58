"""Change events emitted by the engine and the sinks that receive them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from backend.services.cache import queue_push
from backend.utils.config import Settings

LOGGER = logging.getLogger(__name__)

EVENT_STREAM_MAX_LENGTH = 10_000


@dataclass(frozen=True)
class ClinicScope:
    """Caller's already-authorized tenant context, threaded through every call."""

    clinic_id: str
    actor: Optional[str] = None


class ChangeEvent(BaseModel):
    """One state change the notifier may turn into a message."""

    entity: Literal["appointment", "slot"]
    id: int
    event_type: str
    before_status: Optional[str] = None
    after_status: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    clinic_id: Optional[str] = None
    actor: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBuffer:
    """Collects events for one unit of work; published only after commit."""

    def __init__(self, scope: Optional[ClinicScope] = None) -> None:
        self.scope = scope
        self.events: List[ChangeEvent] = []

    def record(
        self,
        entity: Literal["appointment", "slot"],
        entity_id: int,
        event_type: str,
        *,
        before_status: Optional[str] = None,
        after_status: Optional[str] = None,
        **payload: Any,
    ) -> ChangeEvent:
        change = ChangeEvent(
            entity=entity,
            id=entity_id,
            event_type=event_type,
            before_status=before_status,
            after_status=after_status,
            payload=payload,
            clinic_id=self.scope.clinic_id if self.scope else None,
            actor=self.scope.actor if self.scope else None,
        )
        self.events.append(change)
        return change

    def __len__(self) -> int:
        return len(self.events)


class EventSink(Protocol):
    def deliver(self, events: List[ChangeEvent]) -> None:
        ...


class InMemoryEventSink:
    """Keeps delivered events in a list; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: List[ChangeEvent] = []

    def deliver(self, events: List[ChangeEvent]) -> None:
        self.events.extend(events)

    def of_type(self, event_type: str) -> List[ChangeEvent]:
        return [item for item in self.events if item.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink:
    """Writes each event to the log instead of a transport."""

    def deliver(self, events: List[ChangeEvent]) -> None:
        for item in events:
            LOGGER.info(
                "change event: entity=%s id=%s type=%s %s->%s",
                item.entity,
                item.id,
                item.event_type,
                item.before_status,
                item.after_status,
            )


class RedisEventSink:
    """Appends JSON-encoded events to a Redis list for downstream workers."""

    def __init__(self, key: str, *, max_length: int = EVENT_STREAM_MAX_LENGTH) -> None:
        self.key = key
        self.max_length = max_length

    def deliver(self, events: List[ChangeEvent]) -> None:
        if not events:
            return
        queue_push(
            self.key,
            *(item.model_dump_json() for item in events),
            max_length=self.max_length,
        )


class ChangeNotifier:
    """Fire-and-forget boundary between the engine and event delivery."""

    def __init__(self, sink: EventSink) -> None:
        self.sink = sink

    def publish(self, events: List[ChangeEvent]) -> None:
        if not events:
            return

        try:
            self.sink.deliver(list(events))
        except Exception as exc:
            # Delivery never feeds back into the committed transaction.
            LOGGER.error(
                "Change event delivery failed: sink=%s events=%s error=%s",
                type(self.sink).__name__,
                len(events),
                exc,
            )
            return

        LOGGER.debug("Published %s change events", len(events))


def build_notifier(settings: Settings) -> ChangeNotifier:
    """Construct the notifier selected by ``settings.notifier_backend``."""

    backend = settings.notifier_backend.lower()
    if backend == "redis":
        sink: EventSink = RedisEventSink(settings.notifier_redis_key)
    elif backend == "webhook":
        from notification_service.webhook_adapter import WebhookEventSink

        sink = WebhookEventSink(
            url=settings.notifier_webhook_url,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    elif backend == "memory":
        sink = InMemoryEventSink()
    else:
        if backend != "log":
            LOGGER.warning("Unknown notifier backend %r; logging events instead", backend)
        sink = LoggingEventSink()

    return ChangeNotifier(sink)
