"""Notification Dispatcher: sends one notification with bounded retry.

Transient failures (and unexpected channel exceptions) are retried with
exponential backoff; a permanent failure ends the notification at once.
Every attempt runs inside the caller's gate, which refuses to start an
attempt once escalation for the alert was stopped. Backoff waits go
through the injected clock and end early when the token is cancelled.
"""
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from careline.shared.errors import (
    ChannelPermanentFailure,
    ChannelTransientFailure,
    ConfigurationError,
    DispatchCancelled,
)
from careline.shared.models import (
    ContactMethod,
    EmergencyContact,
    EmergencyNotification,
    NotificationChannel,
    NotificationStatus,
)
from careline.shared.utils import CancellationToken, Clock, SystemClock, hash_pii
from .channels import NotificationChannelClient
from .content import AlertSummary

logger = logging.getLogger(__name__)

ABANDONED_ERROR = "retry abandoned: escalation stopped"

Gate = Callable[[Callable[[], str]], str]
UpdateHandler = Callable[[EmergencyNotification], None]

# attempt outcomes
_DONE = "done"
_RETRY = "retry"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay * multiplier^(attempt-1), capped."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be at least 1")

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=int(os.getenv("CARELINE_NOTIFY_MAX_ATTEMPTS", "3")),
            base_delay_seconds=float(os.getenv("CARELINE_NOTIFY_BASE_DELAY", "1.0")),
            multiplier=float(os.getenv("CARELINE_NOTIFY_BACKOFF_MULTIPLIER", "2.0")),
            max_delay_seconds=float(os.getenv("CARELINE_NOTIFY_MAX_DELAY", "30.0")),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(
            self.base_delay_seconds * self.multiplier ** (attempt - 1),
            self.max_delay_seconds,
        )


class NotificationDispatcher:
    """Routes notifications to channel clients."""

    def __init__(
        self,
        channels: Iterable[NotificationChannelClient],
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self._channels: Dict[NotificationChannel, NotificationChannelClient] = {
            client.channel: client for client in channels
        }
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()

        logger.info(
            "DISPATCHER_INITIALIZED",
            extra={
                "channels": sorted(c.value for c in self._channels),
                "max_attempts": self.retry_policy.max_attempts,
            }
        )

    def supports(self, channel: NotificationChannel) -> bool:
        return channel in self._channels

    def dispatch(
        self,
        notification: EmergencyNotification,
        contact: EmergencyContact,
        method: ContactMethod,
        summary: AlertSummary,
        token: Optional[CancellationToken] = None,
        gate: Optional[Gate] = None,
        on_update: Optional[UpdateHandler] = None,
    ) -> EmergencyNotification:
        """Send until success, permanent failure, or attempts run out.

        `notification` is updated in place and returned. on_update is
        called with it after every attempt, inside the gate.
        """
        token = token or CancellationToken()
        gate = gate or (lambda attempt: attempt())
        client = self._channels.get(method.channel)
        policy = self.retry_policy
        recorded = False

        def attempt_once() -> str:
            nonlocal recorded
            notification.attempt += 1
            outcome = _DONE
            try:
                if client is None:
                    raise ChannelPermanentFailure(
                        f"No client for channel {method.channel.value}"
                    )
                receipt = client.send(contact, summary, method)
            except ChannelPermanentFailure as e:
                self._mark_failed(notification, str(e), permanent=True)
            except Exception as e:
                if isinstance(e, ChannelTransientFailure):
                    error = str(e)
                else:
                    error = f"{type(e).__name__}: {e}"
                if notification.attempt >= policy.max_attempts:
                    self._mark_failed(notification, error, permanent=False)
                else:
                    notification.last_error = error
                    outcome = _RETRY
                    logger.warning(
                        "NOTIFICATION_ATTEMPT_FAILED",
                        extra={
                            "notification_id": notification.id,
                            "alert_id": notification.alert_id,
                            "channel": method.channel.value,
                            "attempt": notification.attempt,
                            "error": error,
                        }
                    )
            else:
                now = self.clock.now()
                notification.status = receipt.status
                notification.provider_ref = receipt.provider_ref
                notification.last_error = None
                notification.sent_at = now
                if receipt.status == NotificationStatus.DELIVERED:
                    notification.delivered_at = now
                logger.info(
                    "NOTIFICATION_SENT",
                    extra={
                        "notification_id": notification.id,
                        "alert_id": notification.alert_id,
                        "contact_id_hash": hash_pii(contact.id),
                        "channel": method.channel.value,
                        "status": receipt.status.value,
                        "attempt": notification.attempt,
                    }
                )

            if on_update is not None:
                on_update(notification)
                recorded = True
            return outcome

        while True:
            try:
                outcome = gate(attempt_once)
            except DispatchCancelled:
                return self._abandon(notification, on_update, recorded)

            if outcome == _DONE:
                return notification

            delay = policy.delay_for(notification.attempt)
            if self.clock.wait(token, delay) and token.cancelled:
                return self._abandon(notification, on_update, recorded)

    def _mark_failed(
        self,
        notification: EmergencyNotification,
        error: str,
        permanent: bool,
    ) -> None:
        notification.status = NotificationStatus.FAILED
        notification.failed_at = self.clock.now()
        notification.last_error = error
        logger.error(
            "NOTIFICATION_FAILED",
            extra={
                "notification_id": notification.id,
                "alert_id": notification.alert_id,
                "channel": notification.channel.value,
                "attempt": notification.attempt,
                "permanent": permanent,
                "error": error,
            }
        )

    def _abandon(
        self,
        notification: EmergencyNotification,
        on_update: Optional[UpdateHandler],
        recorded: bool,
    ) -> EmergencyNotification:
        notification.status = NotificationStatus.FAILED
        notification.failed_at = self.clock.now()
        notification.last_error = ABANDONED_ERROR
        logger.info(
            "NOTIFICATION_ABANDONED",
            extra={
                "notification_id": notification.id,
                "alert_id": notification.alert_id,
                "attempt": notification.attempt,
            }
        )
        if recorded and on_update is not None:
            on_update(notification)
        return notification
