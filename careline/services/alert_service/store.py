"""Alert persistence.

The Alert Manager is the only writer. It loads, mutates and saves an
alert while holding that alert's lock, so stores only need to be safe
for concurrent access across different alerts.
"""
import json
import logging
import threading
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from careline.shared.database import BaseRepository, ConnectionManager
from careline.shared.models import AlertSeverity, AlertStatus, EmergencyAlert

logger = logging.getLogger(__name__)


ALERTS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS emergency_alerts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    status TEXT NOT NULL,
    escalation_level INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP,
    payload JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS emergency_alerts_status_idx ON emergency_alerts (status);
CREATE INDEX IF NOT EXISTS emergency_alerts_user_idx ON emergency_alerts (user_id);
"""


class AlertStore:
    """Interface for alert persistence."""

    def add(self, alert: EmergencyAlert) -> None:
        raise NotImplementedError

    def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        raise NotImplementedError

    def save(self, alert: EmergencyAlert) -> None:
        raise NotImplementedError

    def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[EmergencyAlert]:
        """Alerts matching every given filter, newest first."""
        raise NotImplementedError

    def alert_id_for_notification(self, notification_id: str) -> Optional[str]:
        raise NotImplementedError


class InMemoryAlertStore(AlertStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._alerts: Dict[str, EmergencyAlert] = {}
        self._notification_index: Dict[str, str] = {}

    def add(self, alert: EmergencyAlert) -> None:
        with self._lock:
            if alert.id in self._alerts:
                raise ValueError(f"Alert {alert.id} already exists")
            self._alerts[alert.id] = alert
            self._index(alert)

    def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def save(self, alert: EmergencyAlert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert
            self._index(alert)

    def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[EmergencyAlert]:
        with self._lock:
            alerts = list(self._alerts.values())
        if user_id is not None:
            alerts = [a for a in alerts if a.user_id == user_id]
        if status is not None:
            alerts = [a for a in alerts if a.status == status]
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def alert_id_for_notification(self, notification_id: str) -> Optional[str]:
        with self._lock:
            return self._notification_index.get(notification_id)

    def _index(self, alert: EmergencyAlert) -> None:
        for notification in alert.notifications:
            self._notification_index[notification.id] = alert.id


class AlertRepository(BaseRepository[EmergencyAlert]):
    """Row mapping for the emergency_alerts table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "emergency_alerts")

    def _row_to_entity(self, row: tuple) -> EmergencyAlert:
        return EmergencyAlert.from_dict(row[-1])

    def _entity_to_params(self, entity: EmergencyAlert) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "alert_type": entity.alert_type.value,
            "severity": entity.severity.value,
            "status": entity.status.value,
            "escalation_level": entity.escalation_level,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
            "payload": Json(entity.to_dict()),
        }


class PostgresAlertStore(AlertStore):
    """Alerts as JSONB documents with indexed status columns."""

    def __init__(self, connection_manager: ConnectionManager):
        self._repository = AlertRepository(connection_manager)

    def add(self, alert: EmergencyAlert) -> None:
        self._repository.insert(alert)

    def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        return self._repository.find_by_id(alert_id)

    def save(self, alert: EmergencyAlert) -> None:
        self._repository.save(alert)

    def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[EmergencyAlert]:
        filters: Dict[str, Any] = {}
        if user_id is not None:
            filters["user_id"] = user_id
        if status is not None:
            filters["status"] = status.value
        if severity is not None:
            filters["severity"] = severity.value
        return self._repository.find_where(filters)

    def alert_id_for_notification(self, notification_id: str) -> Optional[str]:
        rows = self._repository.find_where(
            {},
            limit=1,
            extra_clause="payload->'notifications' @> %s::jsonb",
            extra_params=(json.dumps([{"id": notification_id}]),),
        )
        return rows[0].id if rows else None
