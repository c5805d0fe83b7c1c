"""Escalation protocols and their matching rules."""
import json
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from careline.shared.errors import ConfigurationError
from careline.shared.models import (
    AlertSeverity,
    AlertType,
    ContactRelationship,
    EmergencyAlert,
    EscalationLevel,
    EscalationProtocol,
    NotificationChannel,
)

logger = logging.getLogger(__name__)

_ALL_CHANNELS = (
    NotificationChannel.PHONE,
    NotificationChannel.SMS,
    NotificationChannel.EMAIL,
    NotificationChannel.PUSH,
    NotificationChannel.IN_APP,
)

URGENT_PROTOCOL = EscalationProtocol(
    id="urgent",
    name="Urgent crisis escalation",
    severities=frozenset({AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY}),
    levels=(
        EscalationLevel(
            name="care_team",
            timeout_seconds=120,
            max_duration_seconds=300,
            channels=(NotificationChannel.SMS, NotificationChannel.PHONE,
                      NotificationChannel.IN_APP, NotificationChannel.EMAIL),
            relationships=frozenset({ContactRelationship.THERAPIST,
                                     ContactRelationship.GUARDIAN}),
        ),
        EscalationLevel(
            name="emergency_contacts",
            timeout_seconds=180,
            max_duration_seconds=600,
            channels=(NotificationChannel.PHONE, NotificationChannel.SMS,
                      NotificationChannel.EMAIL, NotificationChannel.IN_APP),
            relationships=frozenset({ContactRelationship.EMERGENCY_CONTACT,
                                     ContactRelationship.FAMILY,
                                     ContactRelationship.GUARDIAN}),
        ),
        EscalationLevel(
            name="crisis_team",
            timeout_seconds=300,
            channels=_ALL_CHANNELS,
            relationships=frozenset({ContactRelationship.CRISIS_TEAM,
                                     ContactRelationship.PROFESSIONAL}),
        ),
    ),
)

STANDARD_PROTOCOL = EscalationProtocol(
    id="standard",
    name="Standard escalation",
    levels=(
        EscalationLevel(
            name="care_team",
            timeout_seconds=600,
            channels=(NotificationChannel.IN_APP, NotificationChannel.EMAIL,
                      NotificationChannel.SMS),
            relationships=frozenset({ContactRelationship.THERAPIST,
                                     ContactRelationship.GUARDIAN}),
        ),
        EscalationLevel(
            name="emergency_contacts",
            timeout_seconds=900,
            channels=(NotificationChannel.SMS, NotificationChannel.EMAIL,
                      NotificationChannel.IN_APP),
            relationships=frozenset({ContactRelationship.EMERGENCY_CONTACT,
                                     ContactRelationship.FAMILY}),
        ),
        EscalationLevel(
            name="crisis_team",
            timeout_seconds=900,
            channels=_ALL_CHANNELS,
            relationships=frozenset({ContactRelationship.CRISIS_TEAM,
                                     ContactRelationship.PROFESSIONAL}),
        ),
    ),
)

DEFAULT_PROTOCOLS = (URGENT_PROTOCOL, STANDARD_PROTOCOL)


def protocol_from_dict(data: Dict[str, Any]) -> EscalationProtocol:
    """Build a protocol from its JSON form.

    Raises:
        ConfigurationError: unknown enum value or invalid level
    """
    try:
        levels = tuple(
            EscalationLevel(
                name=level["name"],
                timeout_seconds=float(level["timeout_seconds"]),
                max_duration_seconds=(
                    float(level["max_duration_seconds"])
                    if level.get("max_duration_seconds") is not None else None
                ),
                channels=tuple(NotificationChannel(c) for c in level["channels"]),
                relationships=frozenset(
                    ContactRelationship(r) for r in level.get("relationships", [])
                ),
            )
            for level in data["levels"]
        )
        return EscalationProtocol(
            id=data["id"],
            name=data.get("name", data["id"]),
            levels=levels,
            severities=frozenset(AlertSeverity(s) for s in data.get("severities", [])),
            alert_types=frozenset(AlertType(t) for t in data.get("alert_types", [])),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid escalation protocol: {e}") from e


class ProtocolRegistry:
    """Ordered protocols; the first one matching an alert wins.

    The last registered protocol is expected to match everything; if
    none matches, the standard protocol is used.
    """

    def __init__(self, protocols: Optional[Iterable[EscalationProtocol]] = None):
        self._lock = threading.Lock()
        self._protocols: List[EscalationProtocol] = list(
            DEFAULT_PROTOCOLS if protocols is None else protocols
        )

    @classmethod
    def from_file(cls, path: str) -> "ProtocolRegistry":
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        registry = cls(protocol_from_dict(r) for r in records)
        logger.info(
            "ESCALATION_PROTOCOLS_LOADED",
            extra={"path": path, "protocol_ids": registry.protocol_ids}
        )
        return registry

    @property
    def protocol_ids(self) -> List[str]:
        with self._lock:
            return [p.id for p in self._protocols]

    def register(self, protocol: EscalationProtocol, first: bool = False) -> None:
        """Add a protocol, replacing any with the same id."""
        with self._lock:
            self._protocols = [p for p in self._protocols if p.id != protocol.id]
            if first:
                self._protocols.insert(0, protocol)
            else:
                self._protocols.append(protocol)

    def get(self, protocol_id: str) -> Optional[EscalationProtocol]:
        with self._lock:
            return next((p for p in self._protocols if p.id == protocol_id), None)

    def for_alert(self, alert: EmergencyAlert) -> EscalationProtocol:
        """Protocol for an alert; an alert keeps the protocol it started with."""
        if alert.protocol_id:
            pinned = self.get(alert.protocol_id)
            if pinned is not None:
                return pinned

        with self._lock:
            protocols = list(self._protocols)
        for protocol in protocols:
            if protocol.matches(alert.severity, alert.alert_type):
                return protocol

        logger.warning(
            "ESCALATION_PROTOCOL_FALLBACK",
            extra={
                "alert_id": alert.id,
                "severity": alert.severity.value,
                "alert_type": alert.alert_type.value,
                "protocol_id": STANDARD_PROTOCOL.id,
            }
        )
        return STANDARD_PROTOCOL
