"""Tests for notification channels and notification content."""
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from careline.shared.errors import ChannelPermanentFailure, ChannelTransientFailure
from careline.shared.models import (
    AlertSeverity,
    AlertType,
    ContactMethod,
    ContactRelationship,
    EmergencyAlert,
    EmergencyContact,
    NotificationChannel,
    NotificationStatus,
)
from careline.shared.utils import configure_pii_salt
from careline.services.notification_service.channels import (
    InAppChannel,
    SesEmailChannel,
    SnsSmsChannel,
    classify_boto_error,
)
from careline.services.notification_service.content import (
    SMS_SUBJECT,
    AlertSummary,
    build_alert_summary,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def _client_error(code, status=400, operation="SendEmail"):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


CONTACT = EmergencyContact(
    id="contact_1",
    user_id="user_1",
    name="Jordan",
    relationship=ContactRelationship.GUARDIAN,
    methods=(
        ContactMethod(NotificationChannel.EMAIL, "guardian@example.com"),
        ContactMethod(NotificationChannel.SMS, "+15550100", priority=2),
        ContactMethod(NotificationChannel.IN_APP, "guardian_user"),
    ),
)

SUMMARY = AlertSummary(
    alert_id="alert_1",
    subject="CRISIS ALERT - Immediate Attention Required",
    body="Crisis detected for a user in your care.",
    urgency="critical",
    call_to_action="Acknowledge and take immediate action",
)


class TestClassifyBotoError:
    """Tests for classify_boto_error."""

    @pytest.mark.parametrize("code", ["Throttling", "ServiceUnavailable", "InternalFailure"])
    def test_transient_codes(self, code):
        assert isinstance(classify_boto_error(_client_error(code)), ChannelTransientFailure)

    def test_server_errors_are_transient(self):
        error = _client_error("SomethingOdd", status=503)
        assert isinstance(classify_boto_error(error), ChannelTransientFailure)

    @pytest.mark.parametrize("code", ["MessageRejected", "InvalidParameter", "AccessDenied"])
    def test_rejections_are_permanent(self, code):
        failure = classify_boto_error(_client_error(code))
        assert isinstance(failure, ChannelPermanentFailure)
        assert code in str(failure)

    def test_connection_errors_are_transient(self):
        error = EndpointConnectionError(endpoint_url="https://email.us-east-1.amazonaws.com")
        assert isinstance(classify_boto_error(error), ChannelTransientFailure)

    def test_missing_credentials_are_permanent(self):
        assert isinstance(classify_boto_error(NoCredentialsError()), ChannelPermanentFailure)


class TestInAppChannel:
    """Tests for InAppChannel."""

    def test_delivers_to_inbox(self):
        channel = InAppChannel()

        receipt = channel.send(CONTACT, SUMMARY, CONTACT.methods[2])

        assert receipt.status == NotificationStatus.DELIVERED
        assert receipt.provider_ref.startswith("inapp_")
        assert channel.inbox("guardian_user") == [SUMMARY]


class TestSesEmailChannel:
    """Tests for SesEmailChannel with a mocked SES client."""

    def test_send_email(self):
        client = MagicMock()
        client.send_email.return_value = {"MessageId": "ses_abc"}
        channel = SesEmailChannel(sender="alerts@careline.example", client=client)

        receipt = channel.send(CONTACT, SUMMARY, CONTACT.methods[0])

        assert receipt.status == NotificationStatus.SENT
        assert receipt.provider_ref == "ses_abc"
        kwargs = client.send_email.call_args.kwargs
        assert kwargs["Source"] == "alerts@careline.example"
        assert kwargs["Destination"] == {"ToAddresses": ["guardian@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == SUMMARY.subject
        assert SUMMARY.call_to_action in kwargs["Message"]["Body"]["Text"]["Data"]
        assert "ConfigurationSetName" not in kwargs

    def test_throttling_raises_transient(self):
        client = MagicMock()
        client.send_email.side_effect = _client_error("Throttling")
        channel = SesEmailChannel(sender="alerts@careline.example", client=client)

        with pytest.raises(ChannelTransientFailure):
            channel.send(CONTACT, SUMMARY, CONTACT.methods[0])

    def test_rejected_raises_permanent(self):
        client = MagicMock()
        client.send_email.side_effect = _client_error("MessageRejected")
        channel = SesEmailChannel(sender="alerts@careline.example", client=client)

        with pytest.raises(ChannelPermanentFailure):
            channel.send(CONTACT, SUMMARY, CONTACT.methods[0])


class TestSnsSmsChannel:
    """Tests for SnsSmsChannel with a mocked SNS client."""

    def test_publish_sms(self):
        client = MagicMock()
        client.publish.return_value = {"MessageId": "sns_abc"}
        channel = SnsSmsChannel(client=client, sender_id="Careline")

        receipt = channel.send(CONTACT, SUMMARY, CONTACT.methods[1])

        assert receipt.status == NotificationStatus.SENT
        assert receipt.provider_ref == "sns_abc"
        kwargs = client.publish.call_args.kwargs
        assert kwargs["PhoneNumber"] == "+15550100"
        assert kwargs["Message"] == SUMMARY.body
        attributes = kwargs["MessageAttributes"]
        assert attributes["AWS.SNS.SMS.SMSType"]["StringValue"] == "Transactional"
        assert attributes["AWS.SNS.SMS.SenderID"]["StringValue"] == "Careline"

    def test_connection_error_raises_transient(self):
        client = MagicMock()
        client.publish.side_effect = EndpointConnectionError(endpoint_url="https://sns")
        channel = SnsSmsChannel(client=client)

        with pytest.raises(ChannelTransientFailure):
            channel.send(CONTACT, SUMMARY, CONTACT.methods[1])


class TestBuildAlertSummary:
    """Tests for notification content."""

    def _alert(self, alert_type=AlertType.CRISIS_DETECTED, severity=AlertSeverity.CRITICAL,
               description="Detected suicide risk. Call 555-123-4567", context=None):
        return EmergencyAlert(
            id="alert_1",
            user_id="user_1",
            alert_type=alert_type,
            severity=severity,
            title="Crisis Detected",
            description=description,
            created_at=datetime(2026, 1, 14, 12, 0, 0),
            context=context or {},
        )

    def test_crisis_email(self):
        alert = self._alert(context={"location": {"address": "New York, NY"}})

        summary = build_alert_summary(alert, NotificationChannel.EMAIL)

        assert "CRISIS ALERT" in summary.subject
        assert "Crisis detected" in summary.body
        assert "New York, NY" in summary.body
        assert summary.urgency == "critical"
        assert "immediate action" in summary.call_to_action

    def test_description_is_sanitized(self):
        summary = build_alert_summary(self._alert(), NotificationChannel.EMAIL)
        assert "555-123-4567" not in summary.body

    def test_sms_folds_subject_into_body(self):
        summary = build_alert_summary(self._alert(), NotificationChannel.SMS)

        assert summary.subject == SMS_SUBJECT
        assert summary.body.startswith("CRISIS ALERT")
        assert summary.body.endswith(summary.call_to_action)

    def test_phone_prefix(self):
        summary = build_alert_summary(self._alert(), NotificationChannel.PHONE)
        assert summary.body.startswith("This is an automated emergency alert.")

    def test_panic_button_high(self):
        alert = self._alert(
            alert_type=AlertType.PANIC_BUTTON,
            severity=AlertSeverity.HIGH,
            description="Panic button pressed",
        )

        summary = build_alert_summary(alert, NotificationChannel.IN_APP)

        assert summary.subject == "PANIC BUTTON ACTIVATED"
        assert summary.urgency == "high"
        assert "Location: Unknown" in summary.body

    def test_other_types_use_description(self):
        alert = self._alert(alert_type=AlertType.SYSTEM_ALERT, description="Check in")

        summary = build_alert_summary(alert, NotificationChannel.EMAIL)

        assert summary.subject == "Emergency Alert"
        assert summary.body == "Check in"
