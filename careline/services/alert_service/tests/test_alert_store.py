"""Tests for alert stores."""
import json
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from psycopg2.extras import Json

from careline.shared.database import ConnectionManager, DatabaseConfig
from careline.shared.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    EmergencyNotification,
    NotificationChannel,
)
from careline.services.alert_service.store import InMemoryAlertStore, PostgresAlertStore

NOON = datetime(2026, 1, 14, 12, 0, 0)


def _alert(alert_id, user_id="user_1", at=NOON, status=AlertStatus.PENDING,
           severity=AlertSeverity.HIGH):
    return EmergencyAlert(
        id=alert_id,
        user_id=user_id,
        alert_type=AlertType.CRISIS_DETECTED,
        severity=severity,
        title="Crisis Detected",
        description="Crisis language detected",
        created_at=at,
        status=status,
    )


class TestInMemoryAlertStore:
    """Tests for InMemoryAlertStore."""

    def test_add_and_get(self):
        store = InMemoryAlertStore()
        alert = _alert("alert_1")

        store.add(alert)

        assert store.get("alert_1") is alert
        assert store.get("missing") is None

    def test_duplicate_add_rejected(self):
        store = InMemoryAlertStore()
        store.add(_alert("alert_1"))

        with pytest.raises(ValueError):
            store.add(_alert("alert_1"))

    def test_list_filters_newest_first(self):
        store = InMemoryAlertStore()
        store.add(_alert("alert_old", at=NOON - timedelta(hours=1)))
        store.add(_alert("alert_new", at=NOON))
        store.add(_alert("alert_other", user_id="user_2", severity=AlertSeverity.CRITICAL))
        store.add(_alert("alert_done", status=AlertStatus.RESOLVED, at=NOON - timedelta(hours=2)))

        assert [a.id for a in store.list(user_id="user_1")] == [
            "alert_new", "alert_old", "alert_done",
        ]
        assert [a.id for a in store.list(status=AlertStatus.RESOLVED)] == ["alert_done"]
        assert [a.id for a in store.list(severity=AlertSeverity.CRITICAL)] == ["alert_other"]

    def test_notification_index_updated_on_save(self):
        store = InMemoryAlertStore()
        alert = _alert("alert_1")
        store.add(alert)
        alert.notifications.append(EmergencyNotification(
            id="ntf_1",
            alert_id="alert_1",
            contact_id="contact_1",
            channel=NotificationChannel.EMAIL,
        ))

        store.save(alert)

        assert store.alert_id_for_notification("ntf_1") == "alert_1"
        assert store.alert_id_for_notification("ntf_2") is None


class TestPostgresAlertStore:
    """Tests for PostgresAlertStore with a mocked pool."""

    @pytest.fixture
    def cursor(self):
        return MagicMock()

    @pytest.fixture
    def store(self, cursor):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        manager._pool = MagicMock()
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        manager._pool.getconn.return_value = conn
        return PostgresAlertStore(manager)

    def test_save_upserts(self, store, cursor):
        store.save(_alert("alert_1"))

        query, params = cursor.execute.call_args.args
        assert query.startswith("INSERT INTO emergency_alerts")
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert params[0] == "alert_1"
        assert params[4] == "pending"
        assert isinstance(params[-1], Json)

    def test_get_maps_payload(self, store, cursor):
        payload = _alert("alert_1").to_dict()
        cursor.fetchall.return_value = [("alert_1", "user_1", payload)]

        alert = store.get("alert_1")

        assert alert.id == "alert_1"
        assert alert.status == AlertStatus.PENDING
        assert alert.created_at == NOON

    def test_list_builds_filters(self, store, cursor):
        cursor.fetchall.return_value = []

        store.list(user_id="user_1", status=AlertStatus.ESCALATED)

        query, params = cursor.execute.call_args.args
        assert "user_id = %s" in query
        assert "status = %s" in query
        assert params == ["user_1", "escalated"]

    def test_notification_lookup_uses_jsonb_containment(self, store, cursor):
        payload = _alert("alert_1").to_dict()
        cursor.fetchall.return_value = [("alert_1", "user_1", payload)]

        assert store.alert_id_for_notification("ntf_1") == "alert_1"

        query, params = cursor.execute.call_args.args
        assert "payload->'notifications' @> %s::jsonb" in query
        assert json.loads(params[0]) == [{"id": "ntf_1"}]
        assert params[1] == 1
