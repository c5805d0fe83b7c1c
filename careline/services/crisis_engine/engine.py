"""Crisis engine wiring.

Detection feeds alerting: a critical result opens a critical alert
(escalating at once), a high result opens a high alert that escalates
at once only when the detection asked for immediate action. Medium and
low results are recorded but open no alert.

Nothing here is a singleton. Shared state lives in an EngineContext
that is handed to every component.
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from careline.shared.database import ConnectionManager, DatabaseConfig
from careline.shared.events import EngineEvent, EventBus, EventType, KinesisEventSink
from careline.shared.models import (
    AlertMetrics,
    AlertSeverity,
    AlertType,
    AnalysisRequest,
    CrisisDetectionResult,
    EmergencyAlert,
    EmergencyContact,
    EmergencyNotification,
    RiskLevel,
)
from careline.shared.utils import (
    Clock,
    SystemClock,
    configure_pii_salt,
    hash_pii,
    is_pii_salt_configured,
)
from careline.services.alert_service import AlertManager, AlertStore, InMemoryAlertStore
from careline.services.alert_service.store import ALERTS_TABLE_DDL, PostgresAlertStore
from careline.services.detection_service import (
    ConfigProvider,
    CrisisDetectionService,
    DetectionStore,
    DetectionWorkerPool,
    InMemoryDetectionStore,
)
from careline.services.detection_service.store import (
    DETECTIONS_TABLE_DDL,
    PostgresDetectionStore,
)
from careline.services.escalation_service import (
    ContactAvailabilityResolver,
    ContactDirectory,
    EscalationScheduler,
    ProtocolRegistry,
)
from careline.services.notification_service import (
    InAppChannel,
    NotificationChannelClient,
    NotificationDispatcher,
    RetryPolicy,
    SesEmailChannel,
    SnsSmsChannel,
)

logger = logging.getLogger(__name__)

DEV_PII_SALT = "default_dev_salt_change_in_production_32chars"

_ALERT_SEVERITY_FOR_RISK = {
    RiskLevel.CRITICAL: AlertSeverity.CRITICAL,
    RiskLevel.HIGH: AlertSeverity.HIGH,
}


@dataclass
class EngineContext:
    """Shared collaborators passed to every engine component."""
    config_provider: ConfigProvider = field(default_factory=ConfigProvider)
    detection_store: DetectionStore = field(default_factory=InMemoryDetectionStore)
    alert_store: AlertStore = field(default_factory=InMemoryAlertStore)
    clock: Clock = field(default_factory=SystemClock)
    bus: EventBus = field(default_factory=EventBus)
    connection_manager: Optional[ConnectionManager] = None


class CrisisEngine:
    """Detection, alerting and escalation behind one facade."""

    def __init__(
        self,
        context: Optional[EngineContext] = None,
        directory: Optional[ContactDirectory] = None,
        channels: Optional[Iterable[NotificationChannelClient]] = None,
        registry: Optional[ProtocolRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        detection_workers: int = 4,
        max_pending_detections: int = 64,
    ):
        self.context = context or EngineContext()
        ctx = self.context

        self.directory = directory or ContactDirectory()
        self.detection = CrisisDetectionService(
            config_provider=ctx.config_provider,
            store=ctx.detection_store,
            clock=ctx.clock,
            bus=ctx.bus,
        )
        self.alerts = AlertManager(store=ctx.alert_store, bus=ctx.bus, clock=ctx.clock)
        self.dispatcher = NotificationDispatcher(
            list(channels) if channels is not None else [InAppChannel()],
            retry_policy=retry_policy,
            clock=ctx.clock,
        )
        self.scheduler = EscalationScheduler(
            self.alerts,
            self.directory,
            self.dispatcher,
            resolver=ContactAvailabilityResolver(),
            registry=registry or ProtocolRegistry(),
            clock=ctx.clock,
        )
        self._detection_workers = detection_workers
        self._max_pending_detections = max_pending_detections
        self._pool: Optional[DetectionWorkerPool] = None

        logger.info(
            "CRISIS_ENGINE_INITIALIZED",
            extra={
                "persistence": "postgres" if ctx.connection_manager else "memory",
                "protocols": self.scheduler.registry.protocol_ids,
            }
        )

    @classmethod
    def build(
        cls,
        clock: Optional[Clock] = None,
        contacts: Iterable[EmergencyContact] = (),
        channels: Optional[Iterable[NotificationChannelClient]] = None,
        config_provider: Optional[ConfigProvider] = None,
        registry: Optional[ProtocolRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "CrisisEngine":
        """In-memory engine, for tests and local runs.

        Falls back to the development PII salt when none is configured.
        """
        if not is_pii_salt_configured():
            configure_pii_salt(DEV_PII_SALT)

        context = EngineContext(
            config_provider=config_provider or ConfigProvider(),
            clock=clock or SystemClock(),
        )
        return cls(
            context,
            directory=ContactDirectory(contacts),
            channels=channels,
            registry=registry,
            retry_policy=retry_policy,
        )

    @classmethod
    def from_env(cls) -> "CrisisEngine":
        """Engine configured from CARELINE_* environment variables."""
        configure_pii_salt(os.getenv("PII_HASH_SALT", DEV_PII_SALT))

        context = EngineContext(config_provider=ConfigProvider.from_env())
        if os.getenv("CARELINE_STORE", "memory").lower() == "postgres":
            connection_manager = ConnectionManager(DatabaseConfig.from_env())
            connection_manager.initialize()
            if os.getenv("CARELINE_DB_CREATE_SCHEMA", "false").lower() == "true":
                create_schema(connection_manager)
            context.connection_manager = connection_manager
            context.detection_store = PostgresDetectionStore(connection_manager)
            context.alert_store = PostgresAlertStore(connection_manager)

        sink = KinesisEventSink.from_env()
        if sink.enabled:
            context.bus.subscribe(sink)

        channels: List[NotificationChannelClient] = [InAppChannel()]
        if os.getenv("CARELINE_SES_SENDER"):
            channels.append(SesEmailChannel.from_env())
        if os.getenv("CARELINE_SMS_ENABLED", "false").lower() == "true":
            channels.append(SnsSmsChannel.from_env())

        contacts_file = os.getenv("CARELINE_CONTACTS_FILE")
        protocols_file = os.getenv("CARELINE_PROTOCOLS_FILE")

        return cls(
            context,
            directory=ContactDirectory.from_file(contacts_file) if contacts_file else None,
            channels=channels,
            registry=ProtocolRegistry.from_file(protocols_file) if protocols_file else None,
            retry_policy=RetryPolicy.from_env(),
            detection_workers=int(os.getenv("CARELINE_DETECTION_WORKERS", "4")),
            max_pending_detections=int(os.getenv("CARELINE_DETECTION_MAX_PENDING", "64")),
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def handle_message(
        self,
        request: AnalysisRequest,
    ) -> Tuple[Optional[CrisisDetectionResult], Optional[EmergencyAlert]]:
        """Analyse a message and open an alert if the risk calls for one.

        Never raises into ingestion. An alert that cannot be created is
        logged as ALERT_CREATION_FAILED and comes back as None.
        """
        result = self.detection.analyze_message(request)
        if result is None:
            return None, None
        return result, self._open_alert(result)

    def analyze_message(self, request: AnalysisRequest) -> Optional[CrisisDetectionResult]:
        return self.handle_message(request)[0]

    def submit_message(self, request: AnalysisRequest):
        """Analyse in the background. Returns a Future, or None when saturated."""
        return self._worker_pool().submit(request)

    def analyze_with_timeout(
        self,
        request: AnalysisRequest,
        timeout_seconds: float,
    ) -> Optional[CrisisDetectionResult]:
        return self._worker_pool().analyze_with_timeout(request, timeout_seconds)

    def reload_config(self, data) -> None:
        self.context.config_provider.reload(data)

    def _worker_pool(self) -> DetectionWorkerPool:
        if self._pool is None:
            self._pool = DetectionWorkerPool(
                self,
                max_workers=self._detection_workers,
                max_pending=self._max_pending_detections,
            )
        return self._pool

    def _open_alert(self, result: CrisisDetectionResult) -> Optional[EmergencyAlert]:
        severity = _ALERT_SEVERITY_FOR_RISK.get(result.risk_level)
        if severity is None:
            return None

        categories = sorted(c.value for c in result.categories)
        try:
            return self.alerts.create_alert(
                user_id=result.user_id,
                alert_type=AlertType.CRISIS_DETECTED,
                severity=severity,
                description=(
                    f"{result.risk_level.value.capitalize()} crisis risk detected "
                    f"(confidence {result.confidence:.2f}; "
                    f"categories: {', '.join(categories) or 'none'})"
                ),
                conversation_id=result.conversation_id,
                message_id=result.message_id,
                detection_id=result.id,
                context={
                    "detection_id": result.id,
                    "confidence": round(result.confidence, 4),
                    "categories": categories,
                    "signals": [s.value for s in result.signals],
                    "recommendations": list(result.recommendations),
                    "escalation_tier": result.escalation_level.value,
                    "content_hash": result.content_hash,
                },
                immediate_escalation=result.requires_immediate,
            )
        except Exception as e:
            logger.critical(
                "ALERT_CREATION_FAILED",
                extra={
                    "detection_id": result.id,
                    "user_id_hash": (
                        hash_pii(result.user_id) if is_pii_salt_configured() else None
                    ),
                    "risk_level": result.risk_level.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_INTERVENTION_REQUIRED",
                }
            )
            return None

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def create_alert(self, **kwargs) -> EmergencyAlert:
        return self.alerts.create_alert(**kwargs)

    def acknowledge(self, alert_id: str, actor_id: str, notes: Optional[str] = None) -> EmergencyAlert:
        return self.alerts.acknowledge(alert_id, actor_id, notes=notes)

    def start_progress(self, alert_id: str, actor_id: str, notes: Optional[str] = None) -> EmergencyAlert:
        return self.alerts.start_progress(alert_id, actor_id, notes=notes)

    def resolve(self, alert_id: str, actor_id: str, resolution: str) -> EmergencyAlert:
        return self.alerts.resolve(alert_id, actor_id, resolution)

    def escalate(self, alert_id: str, actor_id: str, reason: str) -> EmergencyAlert:
        return self.alerts.escalate(alert_id, actor_id, reason)

    def cancel(self, alert_id: str, actor_id: str, reason: str) -> EmergencyAlert:
        return self.alerts.cancel(alert_id, actor_id, reason)

    def confirm_notification(
        self,
        notification_id: str,
        status,
        actor_id: Optional[str] = None,
    ) -> EmergencyNotification:
        return self.alerts.confirm_notification(notification_id, status, actor_id=actor_id)

    def get_alert(self, alert_id: str) -> EmergencyAlert:
        return self.alerts.get_alert(alert_id)

    def active_alerts(self) -> List[EmergencyAlert]:
        return self.alerts.active_alerts()

    def metrics(self, since: Optional[datetime] = None) -> AlertMetrics:
        return self.alerts.metrics(since=since)

    # ------------------------------------------------------------------
    # Events and lifecycle
    # ------------------------------------------------------------------

    def subscribe(
        self,
        handler: Callable[[EngineEvent], None],
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Callable[[], None]:
        return self.context.bus.subscribe(handler, event_types)

    def readiness(self) -> dict:
        checks = {"detection_enabled": self.context.config_provider.config.enabled}
        if self.context.connection_manager is not None:
            checks["database"] = self.context.connection_manager.health_check()["healthy"]
        return checks

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        if self.context.connection_manager is not None:
            self.context.connection_manager.close()
        logger.info("CRISIS_ENGINE_SHUTDOWN")


def create_schema(connection_manager: ConnectionManager) -> None:
    """Create the detection and alert tables if they do not exist."""
    with connection_manager.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(DETECTIONS_TABLE_DDL)
            cur.execute(ALERTS_TABLE_DDL)
        conn.commit()
    logger.info("DATABASE_SCHEMA_READY")
