"""Crisis detection entry point.

analyze_message never raises. Any failure while analysing (hashing,
extraction or aggregation) is logged and the message is treated as no
detection; the message id is remembered so it is not analysed again.
"""
import logging
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional, Protocol

from careline.shared.errors import AnalysisFailure
from careline.shared.events import EngineEvent, EventBus, EventType
from careline.shared.models import AnalysisRequest, CrisisDetectionResult, RiskLevel
from careline.shared.utils import Clock, SystemClock, hash_pii, hash_text_for_audit
from .aggregator import RiskAggregator
from .config import ConfigProvider
from .extractor import SignalExtractor
from .store import DetectionStore, InMemoryDetectionStore

logger = logging.getLogger(__name__)


class CrisisDetectionService:
    """Runs extraction and aggregation for one message at a time.

    Thread-safe: all per-message state is local; the failed-message
    memory is guarded by a lock.
    """

    MAX_REMEMBERED_FAILURES = 10_000

    def __init__(
        self,
        config_provider: Optional[ConfigProvider] = None,
        store: Optional[DetectionStore] = None,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        extractor: Optional[SignalExtractor] = None,
    ):
        self.config_provider = config_provider or ConfigProvider()
        self.store = store or InMemoryDetectionStore()
        self.clock = clock or SystemClock()
        self.bus = bus
        self.extractor = extractor or SignalExtractor()
        self.aggregator = RiskAggregator(self.store)

        self._failed_lock = threading.Lock()
        self._failed_messages: "OrderedDict[str, None]" = OrderedDict()

        config = self.config_provider.config
        logger.info(
            "CRISIS_DETECTION_INITIALIZED",
            extra={
                "pattern_version": config.pattern_version,
                "languages": list(config.languages),
                "confidence_threshold": config.confidence_threshold,
            }
        )

    def analyze_message(self, request: AnalysisRequest) -> Optional[CrisisDetectionResult]:
        """Score one message.

        Returns:
            The stored CrisisDetectionResult if confidence crossed the
            detection threshold, otherwise None.
        """
        config, catalog = self.config_provider.snapshot()
        if not config.enabled:
            return None

        if self.previously_failed(request.message_id):
            logger.warning(
                "ANALYSIS_SKIPPED_PREVIOUS_FAILURE",
                extra={"message_id": request.message_id}
            )
            return None

        start_time = time.perf_counter()
        user_id_hash = None

        try:
            user_id_hash = hash_pii(request.user_id)
            language = self._resolve_language(request, config, catalog)
            at = self.clock.now()
            signals = self.extractor.extract(
                request.content,
                language,
                catalog,
                config,
                metadata=request.metadata,
            )
            assessment = self.aggregator.assess(signals, request.user_id, at, config)
        except Exception as e:
            failure = AnalysisFailure(request.message_id, e)
            self._remember_failure(request.message_id)
            logger.error(
                "ANALYSIS_FAILED",
                extra={
                    "message_id": request.message_id,
                    "user_id_hash": user_id_hash,
                    "error": str(failure),
                    "error_type": type(e).__name__,
                    "action": "treated_as_no_detection",
                }
            )
            return None

        latency_ms = (time.perf_counter() - start_time) * 1000

        if not assessment.detected:
            logger.info(
                "ANALYSIS_COMPLETED",
                extra={
                    "message_id": request.message_id,
                    "user_id_hash": user_id_hash,
                    "signal_count": len(signals),
                    "confidence": round(assessment.confidence, 4),
                    "detected": False,
                    "latency_ms": round(latency_ms, 2),
                }
            )
            return None

        result = CrisisDetectionResult(
            id=f"det_{uuid.uuid4().hex[:16]}",
            message_id=request.message_id,
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            categories=assessment.categories,
            confidence=assessment.confidence,
            risk_level=assessment.risk_level,
            escalation_level=assessment.escalation_tier,
            requires_immediate=assessment.requires_immediate,
            detected_at=at,
            signals=tuple(signals),
            recommendations=assessment.recommendations,
            content_hash=hash_text_for_audit(request.content),
            language=language,
            pattern_version=config.pattern_version,
            user_history=assessment.user_history,
        )

        try:
            self.store.record(result)
        except Exception as e:
            # Result still flows to alerting; history is best effort
            logger.critical(
                "DETECTION_STORE_FAILED",
                extra={
                    "detection_id": result.id,
                    "message_id": request.message_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

        log = logger.critical if result.risk_level == RiskLevel.CRITICAL else logger.warning
        log(
            "CRISIS_DETECTED",
            extra={
                "detection_id": result.id,
                "message_id": request.message_id,
                "user_id_hash": user_id_hash,
                "conversation_id": request.conversation_id,
                "risk_level": result.risk_level.value,
                "confidence": round(result.confidence, 4),
                "escalation_level": result.escalation_level.value,
                "categories": sorted(c.value for c in result.categories),
                "signal_values": [s.value for s in result.signals],
                "content_hash": result.content_hash,
                "latency_ms": round(latency_ms, 2),
            }
        )

        if self.bus is not None:
            self.bus.publish(EngineEvent.create(
                EventType.CRISIS_DETECTED,
                subject_id=result.id,
                user_id=result.user_id,
                record=result.to_dict(),
                timestamp=at,
            ))

        return result

    def previously_failed(self, message_id: str) -> bool:
        with self._failed_lock:
            return message_id in self._failed_messages

    def _remember_failure(self, message_id: str) -> None:
        with self._failed_lock:
            self._failed_messages[message_id] = None
            self._failed_messages.move_to_end(message_id)
            while len(self._failed_messages) > self.MAX_REMEMBERED_FAILURES:
                self._failed_messages.popitem(last=False)

    @staticmethod
    def _resolve_language(request: AnalysisRequest, config, catalog) -> str:
        requested = request.language
        if not isinstance(requested, str) or not requested:
            requested = config.default_language
        requested = requested.lower()
        if requested in config.languages and requested in catalog.languages:
            return requested

        fallback = config.default_language
        logger.warning(
            "DETECTION_LANGUAGE_FALLBACK",
            extra={
                "message_id": request.message_id,
                "requested_language": requested,
                "fallback_language": fallback,
            }
        )
        return fallback


class MessageAnalyzer(Protocol):
    """Anything that scores a message: the detection service or the engine."""

    def analyze_message(self, request: AnalysisRequest) -> Optional[CrisisDetectionResult]:
        ...


class DetectionWorkerPool:
    """Bounded background analysis.

    At most `max_pending` analyses are queued or running; submit()
    refuses work beyond that instead of queueing without limit.
    """

    def __init__(
        self,
        service: MessageAnalyzer,
        max_workers: int = 4,
        max_pending: int = 64,
    ):
        if max_workers < 1 or max_pending < 1:
            raise ValueError("max_workers and max_pending must be positive")
        self.service = service
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="crisis-detection",
        )
        self._slots = threading.BoundedSemaphore(max_pending)

    def submit(self, request: AnalysisRequest) -> Optional["Future[Optional[CrisisDetectionResult]]"]:
        """Queue an analysis. Returns None if the pool is saturated."""
        if not self._slots.acquire(blocking=False):
            logger.critical(
                "DETECTION_POOL_SATURATED",
                extra={
                    "message_id": request.message_id,
                    "max_pending": self.max_pending,
                    "action": "MESSAGE_NOT_ANALYZED",
                }
            )
            return None

        try:
            future = self._executor.submit(self.service.analyze_message, request)
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def analyze_with_timeout(
        self,
        request: AnalysisRequest,
        timeout_seconds: float,
    ) -> Optional[CrisisDetectionResult]:
        """Analyse with a strict deadline; a timeout counts as no detection."""
        future = self.submit(request)
        if future is None:
            return None
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.error(
                "ANALYSIS_TIMEOUT",
                extra={
                    "message_id": request.message_id,
                    "timeout_seconds": timeout_seconds,
                    "action": "treated_as_no_detection",
                }
            )
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
