"""Crisis detection domain models.

Detection results are immutable and append-only: a result is never
modified after it is written to the Detection Store.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class RiskLevel(Enum):
    """Discrete risk bucket derived from confidence. Ordered."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Severity(Enum):
    """Severity of a single keyword or pattern definition."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CrisisCategory(Enum):
    """Crisis category tags."""
    SUICIDE = "suicide"
    SELF_HARM = "self_harm"
    VIOLENCE = "violence"
    SUBSTANCE_ABUSE = "substance_abuse"
    SEVERE_DEPRESSION = "severe_depression"
    PANIC = "panic"
    EATING_DISORDER = "eating_disorder"
    TRAUMA = "trauma"


class EscalationTier(Enum):
    """Detection-time urgency. Does not set an alert's escalation level."""
    NORMAL = "normal"
    ELEVATED = "elevated"
    EMERGENCY = "emergency"


class SignalKind(Enum):
    KEYWORD = "keyword"
    PATTERN = "pattern"


@dataclass(frozen=True)
class RiskSignal:
    """A single weighted hit from the Signal Extractor.

    `span` indexes into the text the match was found in (lowercased
    or normalized), not necessarily the raw message.
    """
    kind: SignalKind
    category: CrisisCategory
    severity: Severity
    weight: float
    value: str
    span: Tuple[int, int] = (0, 0)
    language: str = "en"

    def __post_init__(self):
        if not 0.0 <= self.weight <= 1.0:
            raise ValueError(f"Signal weight must be 0.0-1.0, got {self.weight}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "weight": round(self.weight, 3),
            "value": self.value,
            "span": list(self.span),
            "language": self.language,
        }


@dataclass(frozen=True)
class CrisisDetectionResult:
    """Outcome of analysing one message that crossed the detection threshold.

    Raw message text is never stored, only its SHA-256 fingerprint.
    """
    id: str
    message_id: str
    user_id: str
    conversation_id: str
    categories: FrozenSet[CrisisCategory]
    confidence: float
    risk_level: RiskLevel
    escalation_level: EscalationTier
    requires_immediate: bool
    detected_at: datetime
    signals: Tuple[RiskSignal, ...] = ()
    recommendations: Tuple[str, ...] = ()
    content_hash: str = ""
    language: str = "en"
    pattern_version: str = ""
    user_history: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "categories": sorted(c.value for c in self.categories),
            "confidence": round(self.confidence, 4),
            "risk_level": self.risk_level.value,
            "escalation_level": self.escalation_level.value,
            "requires_immediate": self.requires_immediate,
            "detected_at": self.detected_at.isoformat(),
            "signals": [s.to_dict() for s in self.signals],
            "recommendations": list(self.recommendations),
            "content_hash": self.content_hash,
            "language": self.language,
            "pattern_version": self.pattern_version,
            "user_history": self.user_history,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrisisDetectionResult":
        return cls(
            id=data["id"],
            message_id=data["message_id"],
            user_id=data["user_id"],
            conversation_id=data["conversation_id"],
            categories=frozenset(CrisisCategory(c) for c in data.get("categories", [])),
            confidence=float(data["confidence"]),
            risk_level=RiskLevel(data["risk_level"]),
            escalation_level=EscalationTier(data["escalation_level"]),
            requires_immediate=bool(data["requires_immediate"]),
            detected_at=_parse_datetime(data["detected_at"]),
            signals=tuple(
                RiskSignal(
                    kind=SignalKind(s["kind"]),
                    category=CrisisCategory(s["category"]),
                    severity=Severity(s["severity"]),
                    weight=float(s["weight"]),
                    value=s["value"],
                    span=tuple(s.get("span", (0, 0))),
                    language=s.get("language", "en"),
                )
                for s in data.get("signals", [])
            ),
            recommendations=tuple(data.get("recommendations", [])),
            content_hash=data.get("content_hash", ""),
            language=data.get("language", "en"),
            pattern_version=data.get("pattern_version", ""),
            user_history=bool(data.get("user_history", False)),
        )


@dataclass(frozen=True)
class AnalysisRequest:
    """Inbound message analysis request."""
    message_id: str
    content: str
    user_id: str
    conversation_id: str
    language: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
