"""Tests for detection stores."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from psycopg2.extras import Json

from careline.shared.database import ConnectionManager, DatabaseConfig
from careline.shared.models import (
    CrisisCategory,
    CrisisDetectionResult,
    EscalationTier,
    RiskLevel,
)
from careline.shared.utils import configure_pii_salt
from careline.services.detection_service.store import (
    InMemoryDetectionStore,
    PostgresDetectionStore,
)

NOON = datetime(2026, 1, 14, 12, 0, 0)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def _result(detection_id, user_id="user_1", at=NOON, risk_level=RiskLevel.HIGH,
            conversation_id="conv_1"):
    return CrisisDetectionResult(
        id=detection_id,
        message_id=f"msg_{detection_id}",
        user_id=user_id,
        conversation_id=conversation_id,
        categories=frozenset({CrisisCategory.SUICIDE}),
        confidence=0.76,
        risk_level=risk_level,
        escalation_level=EscalationTier.ELEVATED,
        requires_immediate=False,
        detected_at=at,
    )


class TestInMemoryDetectionStore:
    """Tests for InMemoryDetectionStore."""

    def test_record_and_get(self):
        store = InMemoryDetectionStore()
        result = _result("det_1")

        store.record(result)

        assert store.get("det_1") is result
        assert store.get("missing") is None

    def test_append_only(self):
        store = InMemoryDetectionStore()
        store.record(_result("det_1"))

        with pytest.raises(ValueError):
            store.record(_result("det_1"))

    def test_history_ordered_and_filtered(self):
        store = InMemoryDetectionStore()
        store.record(_result("det_2", at=NOON))
        store.record(_result("det_1", at=NOON - timedelta(hours=5)))
        store.record(_result("det_3", at=NOON, conversation_id="conv_2"))
        store.record(_result("det_4", user_id="user_2"))

        assert [r.id for r in store.history("user_1")] == ["det_1", "det_2", "det_3"]
        assert [r.id for r in store.history("user_1", since=NOON)] == ["det_2", "det_3"]
        assert [r.id for r in store.history("user_1", conversation_id="conv_2")] == ["det_3"]

    def test_has_recent_high_risk(self):
        store = InMemoryDetectionStore()
        store.record(_result("det_1", at=NOON - timedelta(hours=10)))

        assert store.has_recent_high_risk("user_1", NOON, 168) is True
        assert store.has_recent_high_risk("user_1", NOON, 5) is False
        assert store.has_recent_high_risk("user_2", NOON, 168) is False

    def test_future_detections_ignored(self):
        store = InMemoryDetectionStore()
        store.record(_result("det_1", at=NOON + timedelta(hours=1)))

        assert store.has_recent_high_risk("user_1", NOON, 168) is False


class TestPostgresDetectionStore:
    """Tests for PostgresDetectionStore with a mocked pool."""

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
        return PostgresDetectionStore(manager)

    def test_record_inserts_payload(self, store, cursor):
        store.record(_result("det_1"))

        query, params = cursor.execute.call_args.args
        assert query.startswith("INSERT INTO crisis_detections")
        assert params[0] == "det_1"
        assert params[4] == "high"
        assert params[5] == RiskLevel.HIGH.rank
        assert isinstance(params[-1], Json)

    def test_get_maps_payload(self, store, cursor):
        payload = _result("det_1").to_dict()
        cursor.fetchall.return_value = [("det_1", "...", payload)]

        result = store.get("det_1")

        assert result.id == "det_1"
        assert result.risk_level == RiskLevel.HIGH

    def test_has_recent_high_risk_query(self, store, cursor):
        cursor.fetchall.return_value = []

        assert store.has_recent_high_risk("user_1", NOON, 24) is False

        query, params = cursor.execute.call_args.args
        assert "risk_rank >= %s" in query
        assert params[0] == "user_1"
        assert params[1] == RiskLevel.HIGH.rank
        assert params[2] == NOON - timedelta(hours=24)
