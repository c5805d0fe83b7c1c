"""Escalation Scheduler: per-alert timed notification rounds.

One daemon thread per escalating alert. Each pass of the loop:

1. re-reads the alert (a manual escalation moves it to a new level),
2. advances when the level's time limit ran out,
3. picks the next eligible contact for the level and dispatches,
4. after a successful dispatch waits the level timeout, after a failed
   one moves straight on to the next contact,
5. advances when no contact is left, and marks the alert exhausted
   once the last level has nobody left.

Acknowledge, resolve and cancel cancel the run's token while holding
the alert lock; every state change and send attempt re-checks it
under the same lock.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from careline.shared.models import (
    ContactMethod,
    EmergencyAlert,
    EmergencyContact,
    EmergencyNotification,
    EscalationLevel,
    EscalationProtocol,
    NotificationStatus,
)
from careline.shared.utils import CancellationToken, Clock, hash_pii
from careline.services.alert_service.manager import DISPATCHABLE, AlertManager
from careline.services.notification_service.content import build_alert_summary
from careline.services.notification_service.dispatcher import NotificationDispatcher
from .contacts import ContactAvailabilityResolver, ContactDirectory
from .protocols import ProtocolRegistry

logger = logging.getLogger(__name__)

_SUCCESSFUL = (NotificationStatus.SENT, NotificationStatus.DELIVERED)


@dataclass
class _EscalationRun:
    token: CancellationToken
    thread: Optional[threading.Thread] = None
    finished: bool = False


class EscalationScheduler:
    """Owns the escalation threads for all alerts."""

    def __init__(
        self,
        manager: AlertManager,
        directory: ContactDirectory,
        dispatcher: NotificationDispatcher,
        resolver: Optional[ContactAvailabilityResolver] = None,
        registry: Optional[ProtocolRegistry] = None,
        clock: Optional[Clock] = None,
    ):
        self.manager = manager
        self.directory = directory
        self.dispatcher = dispatcher
        self.resolver = resolver or ContactAvailabilityResolver()
        self.registry = registry or ProtocolRegistry()
        self.clock = clock or manager.clock

        self._runs_lock = threading.Lock()
        self._runs: Dict[str, _EscalationRun] = {}

        manager.attach_scheduler(self)

    # ------------------------------------------------------------------
    # Control, called by the Alert Manager under the alert lock
    # ------------------------------------------------------------------

    def trigger(self, alert_id: str) -> None:
        """Start escalating an alert, or wake its running loop."""
        with self._runs_lock:
            run = self._runs.get(alert_id)
            if run is not None and not run.finished and not run.token.cancelled:
                run.token.nudge()
                logger.info("ESCALATION_NUDGED", extra={"alert_id": alert_id})
                return

            run = _EscalationRun(token=CancellationToken())
            run.thread = threading.Thread(
                target=self._run,
                args=(alert_id, run),
                name=f"escalation-{alert_id}",
                daemon=True,
            )
            self._runs[alert_id] = run

        run.thread.start()
        logger.info("ESCALATION_STARTED", extra={"alert_id": alert_id})

    def stop(self, alert_id: str) -> None:
        """Cancel the alert's escalation. In-flight sends finish first."""
        with self._runs_lock:
            run = self._runs.get(alert_id)
        if run is not None and not run.token.cancelled:
            run.token.cancel()
            logger.info("ESCALATION_STOPPED", extra={"alert_id": alert_id})

    # ------------------------------------------------------------------
    # Inspection and lifecycle
    # ------------------------------------------------------------------

    def is_running(self, alert_id: str) -> bool:
        with self._runs_lock:
            run = self._runs.get(alert_id)
        return (
            run is not None
            and run.thread is not None
            and run.thread.is_alive()
            and not run.finished
            and not run.token.cancelled
        )

    def join(self, alert_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for the alert's current run to end. True if it ended."""
        with self._runs_lock:
            run = self._runs.get(alert_id)
        if run is None or run.thread is None:
            return True
        run.thread.join(timeout)
        return not run.thread.is_alive()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every run and wait for the threads to exit."""
        with self._runs_lock:
            runs = list(self._runs.values())
        for run in runs:
            run.token.cancel()
        for run in runs:
            if run.thread is not None:
                run.thread.join(timeout)
        logger.info("ESCALATION_SCHEDULER_SHUTDOWN", extra={"runs": len(runs)})

    # ------------------------------------------------------------------
    # The escalation loop
    # ------------------------------------------------------------------

    def _run(self, alert_id: str, run: _EscalationRun) -> None:
        token = run.token
        level_started: Dict[int, datetime] = {}

        try:
            while not token.cancelled:
                alert = self.manager.get_alert(alert_id)
                if alert.status not in DISPATCHABLE:
                    if self._finish(alert_id, run):
                        return
                    continue

                protocol = self.registry.for_alert(alert)
                if alert.protocol_id != protocol.id:
                    self.manager.set_protocol(alert_id, protocol.id)

                level_index = alert.escalation_level
                level = protocol.levels[min(level_index, protocol.last_level)]
                now = self.clock.now()
                started = level_started.setdefault(level_index, now)
                elapsed = (now - started).total_seconds()

                target = None
                if level.max_duration_seconds is not None and elapsed >= level.max_duration_seconds:
                    reason = f"time limit reached at level '{level.name}'"
                else:
                    target = self._next_target(alert, level, now)
                    reason = f"no eligible contacts left at level '{level.name}'"

                if target is None:
                    if not self._step_up(alert_id, token, protocol, level_index, reason):
                        if self._finish(alert_id, run):
                            return
                    continue

                contact, method = target
                notification = self._notify(alert, contact, method, token)
                if token.cancelled:
                    break

                if notification.status in _SUCCESSFUL:
                    wait_seconds = level.timeout_seconds
                    if level.max_duration_seconds is not None:
                        elapsed = (self.clock.now() - started).total_seconds()
                        wait_seconds = max(0.0, min(wait_seconds, level.max_duration_seconds - elapsed))
                    self.clock.wait(token, wait_seconds)

        except Exception as e:
            logger.critical(
                "ESCALATION_RUN_FAILED",
                extra={
                    "alert_id": alert_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_INTERVENTION_REQUIRED",
                }
            )
        finally:
            run.finished = True
            with self._runs_lock:
                if self._runs.get(alert_id) is run:
                    del self._runs[alert_id]

    def _step_up(
        self,
        alert_id: str,
        token: CancellationToken,
        protocol: EscalationProtocol,
        level_index: int,
        reason: str,
    ) -> bool:
        """Advance one level, or exhaust at the last one. False to stop."""
        if level_index >= protocol.last_level:
            self.manager.mark_exhausted(alert_id, token)
            return False
        return self.manager.advance_level(alert_id, token, level_index, reason=reason)

    def _finish(self, alert_id: str, run: _EscalationRun) -> bool:
        """Mark the run finished unless a trigger arrived meanwhile."""
        with self.manager.lock_for(alert_id):
            if not run.token.cancelled and run.token.wait(0):
                return False
            run.finished = True
            return True

    def _next_target(
        self,
        alert: EmergencyAlert,
        level: EscalationLevel,
        at: datetime,
    ) -> Optional[Tuple[EmergencyContact, ContactMethod]]:
        """Highest-priority eligible contact not yet notified at this level."""
        notified = {n.contact_id for n in alert.notifications_at_level(alert.escalation_level)}

        for contact in self.directory.contacts_for(alert.user_id):
            if contact.id in notified or not level.accepts(contact):
                continue
            if not self.resolver.is_eligible(contact, at, alert.severity):
                logger.info(
                    "ESCALATION_CONTACT_UNAVAILABLE",
                    extra={
                        "alert_id": alert.id,
                        "contact_id_hash": hash_pii(contact.id),
                        "level": alert.escalation_level,
                    }
                )
                continue
            methods = [
                m for m in contact.methods_for(level.channels)
                if self.dispatcher.supports(m.channel)
            ]
            if methods:
                return contact, methods[0]
        return None

    def _notify(
        self,
        alert: EmergencyAlert,
        contact: EmergencyContact,
        method: ContactMethod,
        token: CancellationToken,
    ) -> EmergencyNotification:
        notification = EmergencyNotification(
            id=f"ntf_{uuid.uuid4().hex[:16]}",
            alert_id=alert.id,
            contact_id=contact.id,
            channel=method.channel,
            escalation_level=alert.escalation_level,
        )
        logger.info(
            "ESCALATION_NOTIFYING",
            extra={
                "alert_id": alert.id,
                "notification_id": notification.id,
                "level": alert.escalation_level,
                "contact_id_hash": hash_pii(contact.id),
                "channel": method.channel.value,
            }
        )
        return self.dispatcher.dispatch(
            notification,
            contact,
            method,
            build_alert_summary(alert, method.channel),
            token=token,
            gate=lambda attempt: self.manager.guarded_send(alert.id, token, attempt),
            on_update=lambda n: self.manager.notification_updated(alert.id, n),
        )
