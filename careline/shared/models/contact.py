"""Emergency contacts and escalation protocols."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .alert import AlertSeverity, AlertType, NotificationChannel


class ContactRelationship(Enum):
    THERAPIST = "therapist"
    GUARDIAN = "guardian"
    EMERGENCY_CONTACT = "emergency_contact"
    CRISIS_TEAM = "crisis_team"
    FAMILY = "family"
    FRIEND = "friend"
    PROFESSIONAL = "professional"


class ContactAvailability(Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    EMERGENCY_ONLY = "emergency_only"


@dataclass(frozen=True)
class ContactMethod:
    """A channel address. Priority 1 is tried first."""
    channel: NotificationChannel
    address: str
    priority: int = 1
    active: bool = True


@dataclass(frozen=True)
class AvailabilityWindow:
    """Weekly window. day_of_week: 0=Sunday .. 6=Saturday; times are HH:MM.

    A window whose end is not after its start wraps past midnight into
    the following day.
    """
    day_of_week: int
    start: str
    end: str

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"day_of_week must be 0-6, got {self.day_of_week}")
        for value in (self.start, self.end):
            _parse_hhmm(value)


@dataclass(frozen=True)
class Availability:
    always_available: bool = False
    emergency_only: bool = False
    schedule: Tuple[AvailabilityWindow, ...] = ()
    timezone: str = "UTC"


@dataclass(frozen=True)
class EmergencyContact:
    id: str
    user_id: str
    name: str
    relationship: ContactRelationship
    methods: Tuple[ContactMethod, ...] = ()
    availability: Availability = field(default_factory=Availability)
    priority: int = 1

    def methods_for(self, channels) -> List[ContactMethod]:
        """Active methods on the given channels, best first."""
        allowed = list(channels)
        candidates = [m for m in self.methods if m.active and m.channel in allowed]
        return sorted(candidates, key=lambda m: (m.priority, allowed.index(m.channel)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "relationship": self.relationship.value,
            "priority": self.priority,
            "methods": [
                {
                    "channel": m.channel.value,
                    "address": m.address,
                    "priority": m.priority,
                    "active": m.active,
                }
                for m in self.methods
            ],
            "availability": {
                "always_available": self.availability.always_available,
                "emergency_only": self.availability.emergency_only,
                "timezone": self.availability.timezone,
                "schedule": [
                    {"day_of_week": w.day_of_week, "start": w.start, "end": w.end}
                    for w in self.availability.schedule
                ],
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyContact":
        availability = data.get("availability") or {}
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data.get("name", ""),
            relationship=ContactRelationship(data["relationship"]),
            priority=int(data.get("priority", 1)),
            methods=tuple(
                ContactMethod(
                    channel=NotificationChannel(m["channel"]),
                    address=m["address"],
                    priority=int(m.get("priority", 1)),
                    active=bool(m.get("active", True)),
                )
                for m in data.get("methods", [])
            ),
            availability=Availability(
                always_available=bool(availability.get("always_available", False)),
                emergency_only=bool(availability.get("emergency_only", False)),
                timezone=availability.get("timezone", "UTC"),
                schedule=tuple(
                    AvailabilityWindow(
                        day_of_week=int(w["day_of_week"]),
                        start=w["start"],
                        end=w["end"],
                    )
                    for w in availability.get("schedule", [])
                ),
            ),
        )


@dataclass(frozen=True)
class EscalationLevel:
    """One step of an escalation protocol.

    timeout_seconds: wait after each successful dispatch before trying
        the next contact at this level.
    max_duration_seconds: the level's own sub-timeout; None means the
        level lasts until its eligible contacts run out.
    relationships: contact-selection rule; empty means any relationship.
    channels: allowed channels in preference order.
    """
    name: str
    timeout_seconds: float
    channels: Tuple[NotificationChannel, ...]
    relationships: FrozenSet[ContactRelationship] = frozenset()
    max_duration_seconds: Optional[float] = None

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not self.channels:
            raise ValueError(f"Escalation level '{self.name}' needs at least one channel")

    def accepts(self, contact: EmergencyContact) -> bool:
        return not self.relationships or contact.relationship in self.relationships


@dataclass(frozen=True)
class EscalationProtocol:
    """Ordered escalation levels plus the alerts they apply to.

    Empty `severities` / `alert_types` match everything.
    """
    id: str
    name: str
    levels: Tuple[EscalationLevel, ...]
    severities: FrozenSet[AlertSeverity] = frozenset()
    alert_types: FrozenSet[AlertType] = frozenset()

    def __post_init__(self):
        if not self.levels:
            raise ValueError(f"Protocol '{self.id}' needs at least one level")

    def matches(self, severity: AlertSeverity, alert_type: AlertType) -> bool:
        if self.severities and severity not in self.severities:
            return False
        if self.alert_types and alert_type not in self.alert_types:
            return False
        return True

    @property
    def last_level(self) -> int:
        return len(self.levels) - 1


def _parse_hhmm(value: str) -> Tuple[int, int]:
    try:
        hours, minutes = value.split(":")
        hours_i, minutes_i = int(hours), int(minutes)
    except (AttributeError, ValueError):
        raise ValueError(f"Expected HH:MM, got {value!r}")
    if not (0 <= hours_i <= 24 and 0 <= minutes_i < 60) or (hours_i == 24 and minutes_i):
        raise ValueError(f"Expected HH:MM, got {value!r}")
    return hours_i, minutes_i
