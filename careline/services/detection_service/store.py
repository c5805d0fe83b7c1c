"""Append-only detection history, per user and conversation."""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from careline.shared.database import BaseRepository, ConnectionManager
from careline.shared.models import CrisisDetectionResult, RiskLevel
from careline.shared.utils import hash_pii

logger = logging.getLogger(__name__)


DETECTIONS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS crisis_detections (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    risk_level TEXT NOT NULL,
    risk_rank SMALLINT NOT NULL,
    confidence NUMERIC(5, 4) NOT NULL,
    detected_at TIMESTAMP NOT NULL,
    payload JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS crisis_detections_user_idx
    ON crisis_detections (user_id, detected_at DESC);
"""


class DetectionStore:
    """Interface for detection history. Implementations are thread-safe."""

    def record(self, result: CrisisDetectionResult) -> None:
        raise NotImplementedError

    def get(self, detection_id: str) -> Optional[CrisisDetectionResult]:
        raise NotImplementedError

    def history(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> List[CrisisDetectionResult]:
        """Detections for a user, oldest first."""
        raise NotImplementedError

    def has_recent_high_risk(self, user_id: str, at: datetime, window_hours: int) -> bool:
        """True if the user had a high or critical detection within the window before `at`."""
        since = at - timedelta(hours=window_hours)
        return any(
            r.risk_level >= RiskLevel.HIGH and r.detected_at <= at
            for r in self.history(user_id, since=since)
        )


class InMemoryDetectionStore(DetectionStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._by_id: Dict[str, CrisisDetectionResult] = {}
        self._by_user: Dict[str, List[CrisisDetectionResult]] = {}

    def record(self, result: CrisisDetectionResult) -> None:
        with self._lock:
            if result.id in self._by_id:
                raise ValueError(f"Detection {result.id} already recorded")
            self._by_id[result.id] = result
            self._by_user.setdefault(result.user_id, []).append(result)

    def get(self, detection_id: str) -> Optional[CrisisDetectionResult]:
        with self._lock:
            return self._by_id.get(detection_id)

    def history(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> List[CrisisDetectionResult]:
        with self._lock:
            results = list(self._by_user.get(user_id, ()))
        if since is not None:
            results = [r for r in results if r.detected_at >= since]
        if conversation_id is not None:
            results = [r for r in results if r.conversation_id == conversation_id]
        return sorted(results, key=lambda r: r.detected_at)


class DetectionRepository(BaseRepository[CrisisDetectionResult]):
    """Row mapping for the crisis_detections table."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "crisis_detections")

    def _row_to_entity(self, row: tuple) -> CrisisDetectionResult:
        # payload is the last column
        return CrisisDetectionResult.from_dict(row[-1])

    def _entity_to_params(self, entity: CrisisDetectionResult) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "message_id": entity.message_id,
            "user_id": entity.user_id,
            "conversation_id": entity.conversation_id,
            "risk_level": entity.risk_level.value,
            "risk_rank": entity.risk_level.rank,
            "confidence": entity.confidence,
            "detected_at": entity.detected_at,
            "payload": Json(entity.to_dict()),
        }


class PostgresDetectionStore(DetectionStore):
    """Detection history in PostgreSQL. Inserts only; rows are never updated."""

    def __init__(self, connection_manager: ConnectionManager):
        self._repository = DetectionRepository(connection_manager)

    def record(self, result: CrisisDetectionResult) -> None:
        self._repository.insert(result)
        logger.info(
            "DETECTION_PERSISTED",
            extra={
                "detection_id": result.id,
                "user_id_hash": hash_pii(result.user_id),
                "risk_level": result.risk_level.value,
            }
        )

    def get(self, detection_id: str) -> Optional[CrisisDetectionResult]:
        return self._repository.find_by_id(detection_id)

    def history(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> List[CrisisDetectionResult]:
        filters: Dict[str, Any] = {"user_id": user_id}
        if conversation_id is not None:
            filters["conversation_id"] = conversation_id
        if since is not None:
            return self._repository.find_where(
                filters,
                order_by="detected_at ASC",
                extra_clause="detected_at >= %s",
                extra_params=(since,),
            )
        return self._repository.find_where(filters, order_by="detected_at ASC")

    def has_recent_high_risk(self, user_id: str, at: datetime, window_hours: int) -> bool:
        rows = self._repository.find_where(
            {"user_id": user_id},
            order_by="detected_at DESC",
            limit=1,
            extra_clause="risk_rank >= %s AND detected_at >= %s AND detected_at <= %s",
            extra_params=(RiskLevel.HIGH.rank, at - timedelta(hours=window_hours), at),
        )
        return bool(rows)
