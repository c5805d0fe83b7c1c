"""Tests for escalation protocols."""
import json
from datetime import datetime

import pytest

from careline.shared.errors import ConfigurationError
from careline.shared.models import (
    AlertSeverity,
    AlertType,
    ContactRelationship,
    EmergencyAlert,
    NotificationChannel,
)
from careline.services.escalation_service.protocols import (
    STANDARD_PROTOCOL,
    URGENT_PROTOCOL,
    ProtocolRegistry,
    protocol_from_dict,
)

PANIC_PROTOCOL = {
    "id": "panic",
    "name": "Panic button",
    "alert_types": ["panic_button"],
    "levels": [
        {
            "name": "everyone",
            "timeout_seconds": 60,
            "channels": ["phone", "sms"],
        },
    ],
}


def _alert(severity=AlertSeverity.HIGH, alert_type=AlertType.CRISIS_DETECTED, protocol_id=None):
    return EmergencyAlert(
        id="alert_1",
        user_id="user_1",
        alert_type=alert_type,
        severity=severity,
        title="Crisis Detected",
        description="Crisis language detected",
        created_at=datetime(2026, 1, 14, 12, 0, 0),
        protocol_id=protocol_id,
    )


class TestProtocolRegistry:
    """Tests for ProtocolRegistry.for_alert."""

    def test_critical_alerts_use_urgent_protocol(self):
        registry = ProtocolRegistry()
        assert registry.for_alert(_alert(AlertSeverity.CRITICAL)) is URGENT_PROTOCOL

    def test_other_alerts_use_standard_protocol(self):
        registry = ProtocolRegistry()
        assert registry.for_alert(_alert(AlertSeverity.HIGH)) is STANDARD_PROTOCOL

    def test_pinned_protocol_wins(self):
        registry = ProtocolRegistry()
        alert = _alert(AlertSeverity.EMERGENCY, protocol_id="standard")
        assert registry.for_alert(alert) is STANDARD_PROTOCOL

    def test_register_first(self):
        registry = ProtocolRegistry()
        registry.register(protocol_from_dict(PANIC_PROTOCOL), first=True)

        alert = _alert(AlertSeverity.CRITICAL, alert_type=AlertType.PANIC_BUTTON)

        assert registry.for_alert(alert).id == "panic"
        assert registry.protocol_ids == ["panic", "urgent", "standard"]

    def test_no_match_falls_back_to_standard(self):
        registry = ProtocolRegistry([URGENT_PROTOCOL])
        assert registry.for_alert(_alert(AlertSeverity.LOW)) is STANDARD_PROTOCOL

    def test_from_file(self, tmp_path):
        path = tmp_path / "protocols.json"
        path.write_text(json.dumps([PANIC_PROTOCOL]))

        registry = ProtocolRegistry.from_file(str(path))

        assert registry.protocol_ids == ["panic"]


class TestProtocolFromDict:
    """Tests for protocol_from_dict."""

    def test_parses_levels(self):
        protocol = protocol_from_dict({
            "id": "custom",
            "severities": ["critical"],
            "levels": [
                {
                    "name": "guardians",
                    "timeout_seconds": 120,
                    "max_duration_seconds": 600,
                    "channels": ["sms", "email"],
                    "relationships": ["guardian"],
                },
            ],
        })

        level = protocol.levels[0]
        assert protocol.name == "custom"
        assert protocol.severities == frozenset({AlertSeverity.CRITICAL})
        assert level.channels == (NotificationChannel.SMS, NotificationChannel.EMAIL)
        assert level.relationships == frozenset({ContactRelationship.GUARDIAN})
        assert level.max_duration_seconds == 600

    @pytest.mark.parametrize("broken", [
        {"id": "x", "levels": []},
        {"id": "x", "levels": [{"name": "l", "timeout_seconds": 60, "channels": ["fax"]}]},
        {"id": "x", "levels": [{"name": "l", "timeout_seconds": 0, "channels": ["sms"]}]},
        {"levels": []},
    ])
    def test_invalid_protocols_rejected(self, broken):
        with pytest.raises(ConfigurationError):
            protocol_from_dict(broken)

    def test_default_protocols_have_three_levels(self):
        assert len(URGENT_PROTOCOL.levels) == 3
        assert len(STANDARD_PROTOCOL.levels) == 3
        assert URGENT_PROTOCOL.last_level == 2
