"""Alert Manager: the only owner of alert state.

State machine:

    pending -> acknowledged -> in_progress -> resolved
    pending / acknowledged -> escalated -> resolved
    any non-terminal -> cancelled

Every operation runs under the alert's lock and validates before it
mutates: a rejected operation raises InvalidTransition and leaves the
alert untouched. Events are published while the lock is held, so
subscribers see one alert's events in the order they happened.

The escalation scheduler calls back into the manager for each step
(advance_level, mark_exhausted, guarded_send, notification_updated),
passing its cancellation token. Acknowledge, resolve and cancel cancel
that token under the same lock, so a stopped alert never starts
another send attempt.
"""
import copy
import dataclasses
import logging
import threading
import uuid
import weakref
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from careline.shared.errors import AlertNotFound, DispatchCancelled, InvalidTransition
from careline.shared.events import EngineEvent, EventBus, EventType
from careline.shared.models import (
    ActionType,
    AlertAction,
    AlertMetrics,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    EmergencyNotification,
    NotificationStatus,
)
from careline.shared.utils import CancellationToken, Clock, SystemClock, hash_pii
from .metrics import compute_alert_metrics
from .store import AlertStore, InMemoryAlertStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_ACTOR = "system"

# Statuses in which escalation may send notifications
DISPATCHABLE = (AlertStatus.PENDING, AlertStatus.ESCALATED)

ACKNOWLEDGEABLE = (AlertStatus.PENDING, AlertStatus.ESCALATED)
PROGRESSABLE = (AlertStatus.ACKNOWLEDGED,)
RESOLVABLE = (AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS, AlertStatus.ESCALATED)
ESCALATABLE = (AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED, AlertStatus.ESCALATED)
CANCELLABLE = (
    AlertStatus.PENDING,
    AlertStatus.ACKNOWLEDGED,
    AlertStatus.IN_PROGRESS,
    AlertStatus.ESCALATED,
)

DEFAULT_TITLES: Dict[AlertType, str] = {
    AlertType.CRISIS_DETECTED: "Crisis Detected",
    AlertType.PANIC_BUTTON: "Panic Button Activated",
    AlertType.MANUAL_ESCALATION: "Manual Escalation",
    AlertType.SYSTEM_ALERT: "System Alert",
    AlertType.FOLLOW_UP_REQUIRED: "Follow-up Required",
}

_DELIVERED = (
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.ACKNOWLEDGED,
)


class AlertLock:
    """Re-entrant lock for one alert.

    The manager keeps these in a weak-valued map, so a lock lives only
    while some thread holds it or waits on it.
    """

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.RLock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self) -> "AlertLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self._lock.release()


class AlertManager:
    """Creates alerts and drives them through the state machine."""

    def __init__(
        self,
        store: Optional[AlertStore] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store or InMemoryAlertStore()
        self.bus = bus or EventBus()
        self.clock = clock or SystemClock()
        self._scheduler = None
        self._locks_guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, AlertLock]" = weakref.WeakValueDictionary()

    def attach_scheduler(self, scheduler) -> None:
        """Connect the escalation scheduler (needs trigger() and stop())."""
        self._scheduler = scheduler

    def lock_for(self, alert_id: str) -> AlertLock:
        """The alert's lock. Entries vanish once no thread holds a reference."""
        with self._locks_guard:
            lock = self._locks.get(alert_id)
            if lock is None:
                lock = AlertLock()
                self._locks[alert_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_alert(
        self,
        user_id: str,
        alert_type: Union[AlertType, str],
        severity: Union[AlertSeverity, str],
        description: str,
        title: Optional[str] = None,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        detection_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        immediate_escalation: bool = False,
        created_by: str = SYSTEM_ACTOR,
    ) -> EmergencyAlert:
        """Open a new alert in `pending`.

        Critical and emergency alerts, and any alert created with
        immediate_escalation, start escalating before this returns.

        Raises:
            ValueError: missing user, severity or description
        """
        if not user_id:
            raise ValueError("user_id is required")
        if severity is None:
            raise ValueError("severity is required")
        if not description or not description.strip():
            raise ValueError("description is required")
        severity = AlertSeverity(severity)
        alert_type = AlertType(alert_type)

        now = self.clock.now()
        alert = EmergencyAlert(
            id=f"alert_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            alert_type=alert_type,
            severity=severity,
            title=title or DEFAULT_TITLES[alert_type],
            description=description.strip(),
            created_at=now,
            updated_at=now,
            conversation_id=conversation_id,
            message_id=message_id,
            detection_id=detection_id,
            context=dict(context or {}),
        )
        alert.actions.append(AlertAction(
            type=ActionType.CREATED,
            performed_by=created_by,
            performed_at=now,
            details=f"{severity.value} {alert_type.value} alert created",
        ))

        escalate_now = severity.is_urgent or immediate_escalation

        with self.lock_for(alert.id):
            self.store.add(alert)

            log = logger.critical if severity.is_urgent else logger.warning
            log(
                "ALERT_CREATED",
                extra={
                    "alert_id": alert.id,
                    "user_id_hash": hash_pii(user_id),
                    "alert_type": alert_type.value,
                    "severity": severity.value,
                    "detection_id": detection_id,
                    "immediate_escalation": escalate_now,
                }
            )
            self._publish(EventType.ALERT_CREATED, alert, now)

            if escalate_now and self._scheduler is not None:
                self._scheduler.trigger(alert.id)

            return copy.deepcopy(alert)

    # ------------------------------------------------------------------
    # Caller-driven transitions
    # ------------------------------------------------------------------

    def acknowledge(
        self,
        alert_id: str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> EmergencyAlert:
        """pending/escalated -> acknowledged. Stops escalation."""
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            self._require(alert, ACKNOWLEDGEABLE, "acknowledge")

            self._stop_escalation(alert_id)
            now = self.clock.now()
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = now
            alert.acknowledged_by = actor_id
            self._commit(alert, ActionType.ACKNOWLEDGMENT, actor_id, notes or "", now)

            logger.info(
                "ALERT_ACKNOWLEDGED",
                extra={
                    "alert_id": alert_id,
                    "acknowledged_by": actor_id,
                    "user_id_hash": hash_pii(alert.user_id),
                    "time_to_acknowledge_seconds": (now - alert.created_at).total_seconds(),
                    "notifications_sent": len(alert.notifications),
                }
            )
            self._publish(EventType.ALERT_ACKNOWLEDGED, alert, now)
            return copy.deepcopy(alert)

    def start_progress(
        self,
        alert_id: str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> EmergencyAlert:
        """acknowledged -> in_progress."""
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            self._require(alert, PROGRESSABLE, "start progress on")

            now = self.clock.now()
            alert.status = AlertStatus.IN_PROGRESS
            self._commit(alert, ActionType.IN_PROGRESS, actor_id, notes or "", now)

            logger.info(
                "ALERT_IN_PROGRESS",
                extra={"alert_id": alert_id, "actor_id": actor_id}
            )
            self._publish(EventType.ALERT_IN_PROGRESS, alert, now)
            return copy.deepcopy(alert)

    def resolve(self, alert_id: str, actor_id: str, resolution: str) -> EmergencyAlert:
        """acknowledged/in_progress/escalated -> resolved. Terminal."""
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            self._require(alert, RESOLVABLE, "resolve")

            self._stop_escalation(alert_id)
            now = self.clock.now()
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = actor_id
            alert.resolution = resolution
            self._commit(alert, ActionType.RESOLUTION, actor_id, resolution or "", now)

            logger.info(
                "ALERT_RESOLVED",
                extra={
                    "alert_id": alert_id,
                    "resolved_by": actor_id,
                    "user_id_hash": hash_pii(alert.user_id),
                    "time_to_resolve_seconds": (now - alert.created_at).total_seconds(),
                    "escalation_level": alert.escalation_level,
                }
            )
            self._publish(EventType.ALERT_RESOLVED, alert, now)
            return copy.deepcopy(alert)

    def escalate(self, alert_id: str, actor_id: str, reason: str) -> EmergencyAlert:
        """pending/acknowledged/escalated -> escalated, one level up.

        Starts a new notification round at the new level.
        """
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            self._require(alert, ESCALATABLE, "escalate")

            now = self.clock.now()
            previous_level = alert.escalation_level
            alert.status = AlertStatus.ESCALATED
            alert.escalation_level = previous_level + 1
            self._commit(alert, ActionType.ESCALATION, actor_id, reason or "", now)

            logger.warning(
                "ALERT_ESCALATED",
                extra={
                    "alert_id": alert_id,
                    "actor_id": actor_id,
                    "from_level": previous_level,
                    "to_level": alert.escalation_level,
                    "manual": True,
                }
            )
            self._publish(EventType.ALERT_ESCALATED, alert, now)

            if self._scheduler is not None:
                self._scheduler.trigger(alert_id)
            return copy.deepcopy(alert)

    def cancel(self, alert_id: str, actor_id: str, reason: str) -> EmergencyAlert:
        """Any non-terminal status -> cancelled. Terminal."""
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            self._require(alert, CANCELLABLE, "cancel")

            self._stop_escalation(alert_id)
            now = self.clock.now()
            alert.status = AlertStatus.CANCELLED
            alert.cancelled_at = now
            alert.cancelled_by = actor_id
            self._commit(alert, ActionType.CANCELLATION, actor_id, reason or "", now)

            logger.info(
                "ALERT_CANCELLED",
                extra={"alert_id": alert_id, "cancelled_by": actor_id, "reason": reason}
            )
            self._publish(EventType.ALERT_CANCELLED, alert, now)
            return copy.deepcopy(alert)

    def confirm_notification(
        self,
        notification_id: str,
        status: Union[NotificationStatus, str],
        actor_id: Optional[str] = None,
    ) -> EmergencyNotification:
        """Record a delivery confirmation reported by a channel.

        An `acknowledged` confirmation also acknowledges the alert when
        it is still pending or escalated.

        Raises:
            ValueError: status is not delivered, acknowledged or failed
            AlertNotFound: unknown notification id
        """
        status = NotificationStatus(status)
        if status not in (
            NotificationStatus.DELIVERED,
            NotificationStatus.ACKNOWLEDGED,
            NotificationStatus.FAILED,
        ):
            raise ValueError(f"Cannot confirm a notification as '{status.value}'")

        alert_id = self.store.alert_id_for_notification(notification_id)
        if alert_id is None:
            raise AlertNotFound(f"Notification {notification_id} not found")

        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            notification = next(
                (n for n in alert.notifications if n.id == notification_id), None
            )
            if notification is None:
                raise AlertNotFound(f"Notification {notification_id} not found")

            now = self.clock.now()
            if status == NotificationStatus.DELIVERED:
                if notification.status in (NotificationStatus.QUEUED, NotificationStatus.SENT):
                    notification.status = NotificationStatus.DELIVERED
                    notification.delivered_at = now
            elif status == NotificationStatus.ACKNOWLEDGED:
                notification.status = NotificationStatus.ACKNOWLEDGED
                notification.acknowledged_at = now
                notification.delivered_at = notification.delivered_at or now
            elif notification.status != NotificationStatus.ACKNOWLEDGED:
                notification.status = NotificationStatus.FAILED
                notification.failed_at = now
                notification.last_error = "reported failed by channel"
                alert.actions.append(AlertAction(
                    type=ActionType.NOTIFICATION_FAILED,
                    performed_by=actor_id or SYSTEM_ACTOR,
                    performed_at=now,
                    details=f"notification {notification_id} reported failed",
                ))
                self._publish(EventType.NOTIFICATION_FAILED, alert, now, notification)

            alert.updated_at = now
            self.store.save(alert)

            logger.info(
                "NOTIFICATION_CONFIRMED",
                extra={
                    "alert_id": alert_id,
                    "notification_id": notification_id,
                    "status": notification.status.value,
                }
            )

            if status == NotificationStatus.ACKNOWLEDGED and alert.status in ACKNOWLEDGEABLE:
                self.acknowledge(
                    alert_id,
                    actor_id or notification.contact_id,
                    notes=f"acknowledged via notification {notification_id}",
                )

            return copy.deepcopy(notification)

    # ------------------------------------------------------------------
    # Scheduler callbacks
    # ------------------------------------------------------------------

    def guarded_send(
        self,
        alert_id: str,
        token: Optional[CancellationToken],
        attempt: Callable[[], T],
    ) -> T:
        """Run one send attempt under the alert lock.

        Raises:
            DispatchCancelled: escalation was stopped or the alert no
                longer accepts notifications
        """
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            if (token is not None and token.cancelled) or alert.status not in DISPATCHABLE:
                raise DispatchCancelled(
                    f"Escalation stopped for alert {alert_id} (status {alert.status.value})"
                )
            return attempt()

    def notification_updated(
        self,
        alert_id: str,
        notification: EmergencyNotification,
    ) -> None:
        """Store the latest state of a notification on its alert.

        A notification not yet on the alert is appended, which is only
        allowed while the alert accepts notifications.
        """
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            snapshot = dataclasses.replace(notification)
            now = self.clock.now()

            index = next(
                (i for i, n in enumerate(alert.notifications) if n.id == notification.id),
                None,
            )
            if index is None:
                if alert.status not in DISPATCHABLE:
                    raise DispatchCancelled(
                        f"Alert {alert_id} no longer accepts notifications"
                    )
                previous_status = None
                alert.notifications.append(snapshot)
            else:
                previous_status = alert.notifications[index].status
                alert.notifications[index] = snapshot

            if snapshot.status in _DELIVERED and previous_status not in _DELIVERED:
                alert.actions.append(AlertAction(
                    type=ActionType.NOTIFICATION_SENT,
                    performed_by=SYSTEM_ACTOR,
                    performed_at=now,
                    details=(
                        f"{snapshot.channel.value} notification to contact "
                        f"{snapshot.contact_id} (level {snapshot.escalation_level})"
                    ),
                ))
                self._publish(EventType.NOTIFICATION_SENT, alert, now, snapshot)
            elif (
                snapshot.status == NotificationStatus.FAILED
                and previous_status != NotificationStatus.FAILED
            ):
                alert.actions.append(AlertAction(
                    type=ActionType.NOTIFICATION_FAILED,
                    performed_by=SYSTEM_ACTOR,
                    performed_at=now,
                    details=(
                        f"{snapshot.channel.value} notification to contact "
                        f"{snapshot.contact_id} failed: {snapshot.last_error}"
                    ),
                ))
                self._publish(EventType.NOTIFICATION_FAILED, alert, now, snapshot)

            alert.updated_at = now
            self.store.save(alert)

    def advance_level(
        self,
        alert_id: str,
        token: CancellationToken,
        from_level: int,
        reason: str = "escalation timeout",
    ) -> bool:
        """Move an escalating alert from `from_level` to the next level.

        Returns:
            False if escalation must stop; True otherwise (including when
            the level already moved past `from_level`).
        """
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            if token.cancelled or alert.status not in DISPATCHABLE:
                return False
            if alert.escalation_level != from_level:
                return True

            now = self.clock.now()
            alert.status = AlertStatus.ESCALATED
            alert.escalation_level = from_level + 1
            self._commit(alert, ActionType.ESCALATION, SYSTEM_ACTOR, reason, now)

            logger.warning(
                "ALERT_ESCALATED",
                extra={
                    "alert_id": alert_id,
                    "from_level": from_level,
                    "to_level": alert.escalation_level,
                    "reason": reason,
                    "manual": False,
                }
            )
            self._publish(EventType.ALERT_ESCALATED, alert, now)
            return True

    def mark_exhausted(self, alert_id: str, token: CancellationToken) -> bool:
        """Fail-safe once every escalation level ran out of contacts.

        Severity becomes emergency and escalation-exhausted fires. Happens
        at most once per alert.
        """
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            if token.cancelled or alert.status not in DISPATCHABLE:
                return False
            if alert.exhausted_at is not None:
                return False

            now = self.clock.now()
            alert.status = AlertStatus.ESCALATED
            alert.severity = AlertSeverity.EMERGENCY
            alert.exhausted_at = now
            self._commit(
                alert,
                ActionType.EXHAUSTED,
                SYSTEM_ACTOR,
                f"all escalation levels exhausted at level {alert.escalation_level}",
                now,
            )

            logger.critical(
                "ESCALATION_EXHAUSTED",
                extra={
                    "alert_id": alert_id,
                    "user_id_hash": hash_pii(alert.user_id),
                    "escalation_level": alert.escalation_level,
                    "notifications_attempted": len(alert.notifications),
                    "action": "MANUAL_INTERVENTION_REQUIRED",
                }
            )
            self._publish(EventType.ESCALATION_EXHAUSTED, alert, now)
            return True

    def set_protocol(self, alert_id: str, protocol_id: str) -> None:
        """Pin the escalation protocol an escalating alert follows."""
        with self.lock_for(alert_id):
            alert = self._load(alert_id)
            if alert.status in DISPATCHABLE and alert.protocol_id != protocol_id:
                alert.protocol_id = protocol_id
                self.store.save(alert)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> EmergencyAlert:
        with self.lock_for(alert_id):
            return copy.deepcopy(self._load(alert_id))

    def list_alerts(
        self,
        user_id: Optional[str] = None,
        status: Optional[Union[AlertStatus, str]] = None,
        severity: Optional[Union[AlertSeverity, str]] = None,
    ) -> List[EmergencyAlert]:
        return [
            copy.deepcopy(a)
            for a in self.store.list(
                user_id=user_id,
                status=AlertStatus(status) if status is not None else None,
                severity=AlertSeverity(severity) if severity is not None else None,
            )
        ]

    def active_alerts(self) -> List[EmergencyAlert]:
        return [copy.deepcopy(a) for a in self.store.list() if not a.is_terminal]

    def metrics(self, since: Optional[datetime] = None) -> AlertMetrics:
        return compute_alert_metrics(self.store.list(), since=since)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, alert_id: str) -> EmergencyAlert:
        alert = self.store.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        return alert

    def _require(self, alert: EmergencyAlert, allowed, operation: str) -> None:
        if alert.status not in allowed:
            logger.warning(
                "ALERT_TRANSITION_REJECTED",
                extra={
                    "alert_id": alert.id,
                    "current_status": alert.status.value,
                    "operation": operation,
                }
            )
            raise InvalidTransition(alert.id, alert.status.value, operation)

    def _stop_escalation(self, alert_id: str) -> None:
        if self._scheduler is not None:
            self._scheduler.stop(alert_id)

    def _commit(
        self,
        alert: EmergencyAlert,
        action_type: ActionType,
        actor_id: str,
        details: str,
        at: datetime,
    ) -> None:
        alert.actions.append(AlertAction(
            type=action_type,
            performed_by=actor_id,
            performed_at=at,
            details=details,
        ))
        alert.updated_at = at
        self.store.save(alert)

    def _publish(
        self,
        event_type: EventType,
        alert: EmergencyAlert,
        at: datetime,
        notification: Optional[EmergencyNotification] = None,
    ) -> None:
        record = alert.to_dict()
        if notification is not None:
            record = {"alert": record, "notification": notification.to_dict()}
        self.bus.publish(EngineEvent.create(
            event_type,
            subject_id=alert.id,
            user_id=alert.user_id,
            record=record,
            timestamp=at,
        ))
