"""Engine events and the in-process event bus.

Subscribers are called synchronously, in subscription order. The Alert
Manager publishes while holding the alert's lock, so events for one
alert arrive in the order they happened. A failing subscriber is
logged and skipped; it never breaks the publisher.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    CRISIS_DETECTED = "crisis-detected"
    ALERT_CREATED = "alert-created"
    ALERT_ACKNOWLEDGED = "alert-acknowledged"
    ALERT_IN_PROGRESS = "alert-in-progress"
    ALERT_RESOLVED = "alert-resolved"
    ALERT_ESCALATED = "alert-escalated"
    ALERT_CANCELLED = "alert-cancelled"
    NOTIFICATION_SENT = "notification-sent"
    NOTIFICATION_FAILED = "notification-failed"
    ESCALATION_EXHAUSTED = "escalation-exhausted"


@dataclass(frozen=True)
class EngineEvent:
    """Immutable event carrying the full relevant record."""
    event_id: str
    event_type: EventType
    subject_id: str        # alert id, or detection id for crisis-detected
    user_id: str
    record: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def create(
        cls,
        event_type: EventType,
        subject_id: str,
        user_id: str,
        record: Dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> "EngineEvent":
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            subject_id=subject_id,
            user_id=user_id,
            record=record,
            timestamp=timestamp or datetime.utcnow(),
        )

    def to_event_payload(self) -> Dict[str, Any]:
        """Stream payload format shared by all engine events."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat() + "Z",
            "source": "crisis-engine",
            "subject_id": self.subject_id,
            "data": self.record,
        }


Handler = Callable[[EngineEvent], None]


class EventBus:
    """Observer list with synchronous, ordered delivery."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[Handler, Optional[FrozenSet[EventType]]]] = []

    def subscribe(
        self,
        handler: Handler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Callable[[], None]:
        """Register a handler. Returns a function that unsubscribes it."""
        entry = (handler, frozenset(event_types) if event_types else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for handler, types in subscribers:
            if types is not None and event.event_type not in types:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "EVENT_HANDLER_FAILED",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type.value,
                        "handler": getattr(handler, "__name__", repr(handler)),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[EngineEvent] = []

    def __call__(self, event: EngineEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType, subject_id: Optional[str] = None) -> List[EngineEvent]:
        with self._lock:
            return [
                e for e in self.events
                if e.event_type == event_type
                and (subject_id is None or e.subject_id == subject_id)
            ]

    def types(self, subject_id: Optional[str] = None) -> List[EventType]:
        with self._lock:
            return [
                e.event_type for e in self.events
                if subject_id is None or e.subject_id == subject_id
            ]
