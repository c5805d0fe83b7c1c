"""Emergency alert domain models.

An EmergencyAlert is mutable but owned exclusively by the Alert Manager;
every mutation happens under that alert's lock. `notifications` and
`actions` only ever grow.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class AlertStatus(Enum):
    """State machine for the alert lifecycle."""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.RESOLVED, AlertStatus.CANCELLED)


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def is_urgent(self) -> bool:
        """Critical and emergency alerts escalate as soon as they exist."""
        return self in (AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY)


class AlertType(Enum):
    CRISIS_DETECTED = "crisis_detected"
    PANIC_BUTTON = "panic_button"
    MANUAL_ESCALATION = "manual_escalation"
    SYSTEM_ALERT = "system_alert"
    FOLLOW_UP_REQUIRED = "follow_up_required"


class NotificationChannel(Enum):
    PHONE = "phone"
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationStatus(Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    ACKNOWLEDGED = "acknowledged"


class ActionType(Enum):
    CREATED = "created"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    ACKNOWLEDGMENT = "acknowledgment"
    IN_PROGRESS = "in_progress"
    ESCALATION = "escalation"
    EXHAUSTED = "exhausted"
    RESOLUTION = "resolution"
    CANCELLATION = "cancellation"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class EmergencyNotification:
    """One notification to one contact over one channel.

    Status and attempt count are updated by the dispatcher on every
    attempt; delivery confirmations arrive separately.
    """
    id: str
    alert_id: str
    contact_id: str
    channel: NotificationChannel
    status: NotificationStatus = NotificationStatus.QUEUED
    attempt: int = 0
    escalation_level: int = 0
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    provider_ref: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "contact_id": self.contact_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "attempt": self.attempt,
            "escalation_level": self.escalation_level,
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "failed_at": _iso(self.failed_at),
            "provider_ref": self.provider_ref,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyNotification":
        return cls(
            id=data["id"],
            alert_id=data["alert_id"],
            contact_id=data["contact_id"],
            channel=NotificationChannel(data["channel"]),
            status=NotificationStatus(data["status"]),
            attempt=int(data.get("attempt", 0)),
            escalation_level=int(data.get("escalation_level", 0)),
            sent_at=_dt(data.get("sent_at")),
            delivered_at=_dt(data.get("delivered_at")),
            acknowledged_at=_dt(data.get("acknowledged_at")),
            failed_at=_dt(data.get("failed_at")),
            provider_ref=data.get("provider_ref"),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class AlertAction:
    """Audit entry appended for every change to an alert."""
    type: ActionType
    performed_by: str
    performed_at: datetime
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat(),
            "details": self.details,
        }


@dataclass
class EmergencyAlert:
    """Safety-critical alert tracked through escalation."""
    id: str
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    created_at: datetime
    status: AlertStatus = AlertStatus.PENDING
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    detection_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    notifications: List[EmergencyNotification] = field(default_factory=list)
    actions: List[AlertAction] = field(default_factory=list)
    escalation_level: int = 0
    protocol_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    exhausted_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def notifications_at_level(self, level: int) -> List[EmergencyNotification]:
        return [n for n in self.notifications if n.escalation_level == level]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "detection_id": self.detection_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "context": self.context,
            "escalation_level": self.escalation_level,
            "protocol_id": self.protocol_id,
            "notifications": [n.to_dict() for n in self.notifications],
            "actions": [a.to_dict() for a in self.actions],
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution": self.resolution,
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "exhausted_at": _iso(self.exhausted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyAlert":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            alert_type=AlertType(data["alert_type"]),
            severity=AlertSeverity(data["severity"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            created_at=_dt(data["created_at"]),
            status=AlertStatus(data["status"]),
            conversation_id=data.get("conversation_id"),
            message_id=data.get("message_id"),
            detection_id=data.get("detection_id"),
            context=data.get("context") or {},
            notifications=[
                EmergencyNotification.from_dict(n) for n in data.get("notifications", [])
            ],
            actions=[
                AlertAction(
                    type=ActionType(a["type"]),
                    performed_by=a["performed_by"],
                    performed_at=_dt(a["performed_at"]),
                    details=a.get("details", ""),
                )
                for a in data.get("actions", [])
            ],
            escalation_level=int(data.get("escalation_level", 0)),
            protocol_id=data.get("protocol_id"),
            updated_at=_dt(data.get("updated_at")),
            acknowledged_at=_dt(data.get("acknowledged_at")),
            acknowledged_by=data.get("acknowledged_by"),
            resolved_at=_dt(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            resolution=data.get("resolution"),
            cancelled_at=_dt(data.get("cancelled_at")),
            cancelled_by=data.get("cancelled_by"),
            exhausted_at=_dt(data.get("exhausted_at")),
        )


@dataclass(frozen=True)
class AlertMetrics:
    """Derived, read-only view over alert history."""
    total_alerts: int
    by_severity: Dict[str, int]
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    average_time_to_acknowledge_seconds: Optional[float]
    acknowledgment_rate: float
    escalation_rate: float
    resolution_rate: float
    exhaustion_rate: float
    notifications_sent: int
    notifications_failed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_alerts": self.total_alerts,
            "by_severity": dict(self.by_severity),
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "average_time_to_acknowledge_seconds": self.average_time_to_acknowledge_seconds,
            "acknowledgment_rate": round(self.acknowledgment_rate, 4),
            "escalation_rate": round(self.escalation_rate, 4),
            "resolution_rate": round(self.resolution_rate, 4),
            "exhaustion_rate": round(self.exhaustion_rate, 4),
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
        }
