"""Notification channel clients.

Each client sends one message to one contact method and reports the
outcome as a ChannelReceipt. Failures are raised as
ChannelTransientFailure (worth retrying) or ChannelPermanentFailure
(the channel rejected the message).
"""
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from careline.shared.errors import (
    CarelineError,
    ChannelPermanentFailure,
    ChannelTransientFailure,
)
from careline.shared.models import (
    ContactMethod,
    EmergencyContact,
    NotificationChannel,
    NotificationStatus,
)
from careline.shared.utils import hash_pii
from .content import AlertSummary

logger = logging.getLogger(__name__)


TRANSIENT_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "InternalFailure",
    "InternalError",
    "RequestTimeout",
})

_TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


@dataclass(frozen=True)
class ChannelReceipt:
    """Outcome of a successful send. `delivered` means confirmed synchronously."""
    status: NotificationStatus
    provider_ref: Optional[str] = None


class NotificationChannelClient:
    """Interface for one delivery channel."""

    channel: NotificationChannel

    def send(
        self,
        contact: EmergencyContact,
        summary: AlertSummary,
        method: ContactMethod,
    ) -> ChannelReceipt:
        raise NotImplementedError


def classify_boto_error(error: Exception) -> CarelineError:
    """Map an AWS SDK error to a transient or permanent channel failure."""
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return ChannelTransientFailure(f"{type(error).__name__}: {error}")

    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        message = f"{code}: {details.get('Message', '')}"
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return ChannelTransientFailure(message)
        return ChannelPermanentFailure(message)

    return ChannelPermanentFailure(f"{type(error).__name__}: {error}")


class InAppChannel(NotificationChannelClient):
    """In-process inbox; delivery is confirmed immediately."""

    channel = NotificationChannel.IN_APP

    def __init__(self):
        self._lock = threading.Lock()
        self._inbox: Dict[str, List[AlertSummary]] = {}

    def send(
        self,
        contact: EmergencyContact,
        summary: AlertSummary,
        method: ContactMethod,
    ) -> ChannelReceipt:
        with self._lock:
            self._inbox.setdefault(method.address or contact.id, []).append(summary)
        return ChannelReceipt(
            status=NotificationStatus.DELIVERED,
            provider_ref=f"inapp_{uuid.uuid4().hex[:12]}",
        )

    def inbox(self, address: str) -> List[AlertSummary]:
        with self._lock:
            return list(self._inbox.get(address, []))


class _BotoChannel(NotificationChannelClient):
    """Shared lazy client handling for the AWS channels."""

    service_name = ""

    def __init__(self, region: Optional[str] = None, client=None):
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self):
        """Lazy initialization of the boto3 client."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    try:
                        import boto3
                        self._client = boto3.client(self.service_name, region_name=self.region)
                    except Exception as e:
                        logger.error(
                            "CHANNEL_CLIENT_INIT_FAILED",
                            extra={"service": self.service_name, "error": str(e)}
                        )
        return self._client

    def _call(self, contact: EmergencyContact, operation: str, **kwargs) -> dict:
        client = self.client
        if client is None:
            raise ChannelPermanentFailure(f"{self.service_name} client unavailable")

        try:
            return getattr(client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            failure = classify_boto_error(e)
            logger.warning(
                "CHANNEL_SEND_FAILED",
                extra={
                    "channel": self.channel.value,
                    "contact_id_hash": hash_pii(contact.id),
                    "error": str(failure),
                    "transient": isinstance(failure, ChannelTransientFailure),
                }
            )
            raise failure from e


class SesEmailChannel(_BotoChannel):
    """Email through AWS SES."""

    channel = NotificationChannel.EMAIL
    service_name = "ses"

    def __init__(
        self,
        sender: str,
        region: Optional[str] = None,
        client=None,
        configuration_set: Optional[str] = None,
    ):
        super().__init__(region=region, client=client)
        self.sender = sender
        self.configuration_set = configuration_set

    @classmethod
    def from_env(cls) -> "SesEmailChannel":
        return cls(
            sender=os.getenv("CARELINE_SES_SENDER", "alerts@careline.example"),
            configuration_set=os.getenv("CARELINE_SES_CONFIGURATION_SET") or None,
        )

    def send(
        self,
        contact: EmergencyContact,
        summary: AlertSummary,
        method: ContactMethod,
    ) -> ChannelReceipt:
        request = {
            "Source": self.sender,
            "Destination": {"ToAddresses": [method.address]},
            "Message": {
                "Subject": {"Data": summary.subject, "Charset": "UTF-8"},
                "Body": {
                    "Text": {
                        "Data": f"{summary.body}\n\n{summary.call_to_action}",
                        "Charset": "UTF-8",
                    },
                },
            },
        }
        if self.configuration_set:
            request["ConfigurationSetName"] = self.configuration_set

        response = self._call(contact, "send_email", **request)
        return ChannelReceipt(
            status=NotificationStatus.SENT,
            provider_ref=response.get("MessageId"),
        )


class SnsSmsChannel(_BotoChannel):
    """SMS through AWS SNS, sent as transactional messages."""

    channel = NotificationChannel.SMS
    service_name = "sns"

    def __init__(
        self,
        region: Optional[str] = None,
        client=None,
        sender_id: Optional[str] = None,
    ):
        super().__init__(region=region, client=client)
        self.sender_id = sender_id

    @classmethod
    def from_env(cls) -> "SnsSmsChannel":
        return cls(sender_id=os.getenv("CARELINE_SMS_SENDER_ID") or None)

    def send(
        self,
        contact: EmergencyContact,
        summary: AlertSummary,
        method: ContactMethod,
    ) -> ChannelReceipt:
        attributes = {
            "AWS.SNS.SMS.SMSType": {
                "DataType": "String",
                "StringValue": "Transactional",
            },
        }
        if self.sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {
                "DataType": "String",
                "StringValue": self.sender_id,
            }

        response = self._call(
            contact,
            "publish",
            PhoneNumber=method.address,
            Message=summary.body,
            MessageAttributes=attributes,
        )
        return ChannelReceipt(
            status=NotificationStatus.SENT,
            provider_ref=response.get("MessageId"),
        )
