"""Shared domain models for the crisis engine."""
from .crisis import (
    AnalysisRequest,
    CrisisCategory,
    CrisisDetectionResult,
    EscalationTier,
    RiskLevel,
    RiskSignal,
    Severity,
    SignalKind,
)
from .alert import (
    ActionType,
    AlertAction,
    AlertMetrics,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    EmergencyNotification,
    NotificationChannel,
    NotificationStatus,
)
from .contact import (
    Availability,
    AvailabilityWindow,
    ContactAvailability,
    ContactMethod,
    ContactRelationship,
    EmergencyContact,
    EscalationLevel,
    EscalationProtocol,
)

__all__ = [
    "AnalysisRequest",
    "CrisisCategory",
    "CrisisDetectionResult",
    "EscalationTier",
    "RiskLevel",
    "RiskSignal",
    "Severity",
    "SignalKind",
    "ActionType",
    "AlertAction",
    "AlertMetrics",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "EmergencyAlert",
    "EmergencyNotification",
    "NotificationChannel",
    "NotificationStatus",
    "Availability",
    "AvailabilityWindow",
    "ContactAvailability",
    "ContactMethod",
    "ContactRelationship",
    "EmergencyContact",
    "EscalationLevel",
    "EscalationProtocol",
]
