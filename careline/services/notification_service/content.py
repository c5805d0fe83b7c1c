"""Notification text for an alert.

Free text from the alert is passed through sanitize_content before it
is put in any message. Raw conversation text is never part of an alert,
so it cannot end up here.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from careline.shared.models import (
    AlertSeverity,
    AlertType,
    EmergencyAlert,
    NotificationChannel,
)
from careline.shared.utils import sanitize_content


@dataclass(frozen=True)
class AlertSummary:
    """Channel-ready content for one notification."""
    alert_id: str
    subject: str
    body: str
    urgency: str              # "critical" or "high"
    call_to_action: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "alert_id": self.alert_id,
            "subject": self.subject,
            "body": self.body,
            "urgency": self.urgency,
            "call_to_action": self.call_to_action,
        }


# alert type -> (subject, body template, call to action)
_TEMPLATES: Dict[AlertType, Tuple[str, str, str]] = {
    AlertType.CRISIS_DETECTED: (
        "CRISIS ALERT - Immediate Attention Required",
        "Crisis detected for a user in your care. {description}. "
        "Location: {location}. Please respond immediately.",
        "Acknowledge and take immediate action",
    ),
    AlertType.PANIC_BUTTON: (
        "PANIC BUTTON ACTIVATED",
        "A user in your care activated the panic button. {description}. "
        "Location: {location}. Immediate intervention required.",
        "Contact the user immediately",
    ),
    AlertType.MANUAL_ESCALATION: (
        "Manual Escalation Required",
        "Manual escalation requested. {description}. "
        "Please review and take appropriate action.",
        "Review and respond",
    ),
}

_DEFAULT_TEMPLATE = ("Emergency Alert", "{description}", "Please respond")

SMS_SUBJECT = "Emergency Alert"
SMS_MAX_LENGTH = 480


def build_alert_summary(
    alert: EmergencyAlert,
    channel: NotificationChannel,
    acknowledge_hint: Optional[str] = None,
) -> AlertSummary:
    """Render the notification content for one alert and channel.

    SMS folds the subject and call to action into the body. Phone
    messages are prefixed so the listener knows the call is automated.
    """
    subject, template, call_to_action = _TEMPLATES.get(alert.alert_type, _DEFAULT_TEMPLATE)
    body = template.format(
        description=sanitize_content(alert.description).rstrip("."),
        location=_location(alert),
    )
    if acknowledge_hint:
        call_to_action = f"{call_to_action}. {acknowledge_hint}"

    if channel == NotificationChannel.SMS:
        body = f"{subject}\n{body}\n{call_to_action}"[:SMS_MAX_LENGTH]
        subject = SMS_SUBJECT
    elif channel == NotificationChannel.PHONE:
        body = f"This is an automated emergency alert. {body}"

    urgency = "critical" if alert.severity in (
        AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY
    ) else "high"

    return AlertSummary(
        alert_id=alert.id,
        subject=subject,
        body=body,
        urgency=urgency,
        call_to_action=call_to_action,
    )


def _location(alert: EmergencyAlert) -> str:
    location = alert.context.get("location")
    if isinstance(location, dict):
        return location.get("address") or "Unknown"
    return str(location) if location else "Unknown"
