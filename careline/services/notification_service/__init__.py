"""Notification service: channel clients, content and retrying dispatch."""
from .channels import (
    ChannelReceipt,
    InAppChannel,
    NotificationChannelClient,
    SesEmailChannel,
    SnsSmsChannel,
    classify_boto_error,
)
from .content import AlertSummary, build_alert_summary
from .dispatcher import NotificationDispatcher, RetryPolicy

__all__ = [
    "ChannelReceipt",
    "InAppChannel",
    "NotificationChannelClient",
    "SesEmailChannel",
    "SnsSmsChannel",
    "classify_boto_error",
    "AlertSummary",
    "build_alert_summary",
    "NotificationDispatcher",
    "RetryPolicy",
]
