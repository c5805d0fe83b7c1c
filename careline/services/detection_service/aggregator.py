"""Risk aggregation: signals plus context -> confidence, level and tier.

Formula (all steps deterministic):

1. Each signal contributes s = weight * SEVERITY_FACTORS[severity]
   * CATEGORY_BASE_WEIGHTS[category].
2. Base confidence c = 1 - prod(1 - s). Adding a signal never lowers c.
3. False-positive reduction: a lone keyword with s < weak_signal_weight
   is multiplied by (1 - false_positive_discount).
4. A high or critical detection for the same user within
   history_window_hours multiplies c by (1 + user_history_weight).
5. Messages in the late-night window multiply c by (1 + time_factor_weight).
6. c is clamped to [0, 1].
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Sequence, Tuple

from careline.shared.models import (
    CrisisCategory,
    EscalationTier,
    RiskLevel,
    RiskSignal,
    SignalKind,
)
from .config import CATEGORY_BASE_WEIGHTS, SEVERITY_FACTORS, DetectionConfig
from .store import DetectionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskAssessment:
    """Aggregated view of one message's signals."""
    confidence: float
    base_confidence: float
    risk_level: RiskLevel
    escalation_tier: EscalationTier
    requires_immediate: bool
    detected: bool
    categories: FrozenSet[CrisisCategory] = frozenset()
    user_history: bool = False
    late_night: bool = False
    recommendations: Tuple[str, ...] = ()
    adjustments: Dict[str, float] = field(default_factory=dict)


def signal_contribution(signal: RiskSignal) -> float:
    return (
        signal.weight
        * SEVERITY_FACTORS[signal.severity]
        * CATEGORY_BASE_WEIGHTS[signal.category]
    )


def combine(contributions: Sequence[float]) -> float:
    """Probabilistic OR of independent contributions."""
    remaining = 1.0
    for s in contributions:
        remaining *= 1.0 - min(max(s, 0.0), 1.0)
    return 1.0 - remaining


def risk_level_for(confidence: float, config: DetectionConfig) -> RiskLevel:
    """Step function over confidence; monotone non-decreasing."""
    if confidence >= config.escalation_threshold:
        return RiskLevel.CRITICAL
    if confidence >= config.high_threshold:
        return RiskLevel.HIGH
    if confidence >= config.medium_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def escalation_tier_for(risk_level: RiskLevel, user_history: bool) -> EscalationTier:
    if risk_level == RiskLevel.CRITICAL:
        return EscalationTier.EMERGENCY
    if risk_level == RiskLevel.HIGH:
        return EscalationTier.EMERGENCY if user_history else EscalationTier.ELEVATED
    if risk_level == RiskLevel.MEDIUM:
        return EscalationTier.ELEVATED
    return EscalationTier.NORMAL


def is_late_night(hour: int, config: DetectionConfig) -> bool:
    start, end = config.late_night_start_hour, config.late_night_end_hour
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def build_recommendations(
    risk_level: RiskLevel,
    categories: FrozenSet[CrisisCategory],
    user_history: bool,
) -> Tuple[str, ...]:
    recommendations: List[str] = []

    if risk_level == RiskLevel.CRITICAL:
        recommendations.extend([
            "Immediate intervention required",
            "Contact emergency services if imminent danger",
            "Ensure user safety and continuous monitoring",
        ])
    elif risk_level == RiskLevel.HIGH:
        recommendations.extend([
            "Urgent therapeutic intervention needed",
            "Contact assigned therapist immediately",
            "Consider safety planning session",
        ])
    elif risk_level == RiskLevel.MEDIUM:
        recommendations.append("Schedule a check-in with the care team")

    if CrisisCategory.SUICIDE in categories:
        recommendations.extend([
            "Conduct suicide risk assessment",
            "Implement suicide prevention protocol",
        ])
    if CrisisCategory.SELF_HARM in categories:
        recommendations.append("Assess for injuries and self-harm methods")
    if CrisisCategory.VIOLENCE in categories:
        recommendations.append("Assess risk to others and duty-to-warn obligations")

    if user_history:
        recommendations.extend([
            "Review previous intervention strategies",
            "Consider escalating care level",
        ])

    return tuple(recommendations)


class RiskAggregator:
    """Turns extracted signals into a RiskAssessment."""

    def __init__(self, store: DetectionStore):
        self._store = store

    def assess(
        self,
        signals: Sequence[RiskSignal],
        user_id: str,
        at: datetime,
        config: DetectionConfig,
    ) -> RiskAssessment:
        contributions = [signal_contribution(s) for s in signals]
        base = combine(contributions)
        confidence = base
        adjustments: Dict[str, float] = {}

        if (
            config.false_positive_reduction
            and len(signals) == 1
            and signals[0].kind == SignalKind.KEYWORD
            and contributions[0] < config.weak_signal_weight
        ):
            confidence *= 1.0 - config.false_positive_discount
            adjustments["false_positive_discount"] = config.false_positive_discount

        user_history = False
        if signals:
            user_history = self._store.has_recent_high_risk(
                user_id, at, config.history_window_hours
            )
        if user_history:
            confidence *= 1.0 + config.user_history_weight
            adjustments["user_history_weight"] = config.user_history_weight

        late_night = is_late_night(at.hour, config)
        if late_night and signals:
            confidence *= 1.0 + config.time_factor_weight
            adjustments["time_factor_weight"] = config.time_factor_weight

        confidence = min(max(confidence, 0.0), 1.0)

        risk_level = risk_level_for(confidence, config)
        tier = escalation_tier_for(risk_level, user_history)
        categories = frozenset(s.category for s in signals)

        return RiskAssessment(
            confidence=confidence,
            base_confidence=base,
            risk_level=risk_level,
            escalation_tier=tier,
            requires_immediate=(
                risk_level == RiskLevel.CRITICAL or tier == EscalationTier.EMERGENCY
            ),
            detected=bool(signals) and confidence >= config.confidence_threshold,
            categories=categories,
            user_history=user_history,
            late_night=late_night,
            recommendations=build_recommendations(risk_level, categories, user_history),
            adjustments=adjustments,
        )
