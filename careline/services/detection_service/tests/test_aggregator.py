"""Tests for RiskAggregator scoring."""
from datetime import datetime, timedelta

import pytest

from careline.shared.models import (
    CrisisCategory,
    CrisisDetectionResult,
    EscalationTier,
    RiskLevel,
    RiskSignal,
    Severity,
    SignalKind,
)
from careline.services.detection_service.aggregator import (
    RiskAggregator,
    combine,
    escalation_tier_for,
    is_late_night,
    risk_level_for,
    signal_contribution,
)
from careline.services.detection_service.config import DetectionConfig
from careline.services.detection_service.store import InMemoryDetectionStore

NOON = datetime(2026, 1, 14, 12, 0, 0)


def _signal(value="kill myself", severity=Severity.CRITICAL, weight=0.95,
            category=CrisisCategory.SUICIDE, kind=SignalKind.KEYWORD):
    return RiskSignal(kind=kind, category=category, severity=severity,
                      weight=weight, value=value)


def _prior_detection(user_id, at, risk_level=RiskLevel.HIGH):
    return CrisisDetectionResult(
        id=f"det_{at.isoformat()}",
        message_id="msg_prior",
        user_id=user_id,
        conversation_id="conv_1",
        categories=frozenset({CrisisCategory.SUICIDE}),
        confidence=0.75,
        risk_level=risk_level,
        escalation_level=EscalationTier.ELEVATED,
        requires_immediate=False,
        detected_at=at,
    )


@pytest.fixture
def store():
    return InMemoryDetectionStore()


@pytest.fixture
def aggregator(store):
    return RiskAggregator(store)


@pytest.fixture
def config():
    return DetectionConfig()


class TestFormula:
    """Contribution and combination."""

    def test_contribution(self):
        signal = _signal("suicide", Severity.HIGH, 0.9)

        assert signal_contribution(signal) == pytest.approx(0.9 * 0.85 * 1.0)

    def test_combine_is_probabilistic_or(self):
        assert combine([0.5, 0.5]) == pytest.approx(0.75)
        assert combine([]) == 0.0

    def test_adding_a_signal_never_lowers_confidence(self):
        values = [0.2, 0.05, 0.7, 0.0, 0.33]
        previous = 0.0
        for i in range(1, len(values) + 1):
            current = combine(values[:i])
            assert current >= previous
            previous = current


class TestRiskLevel:
    """risk_level_for is a monotone step function."""

    @pytest.mark.parametrize("confidence,expected", [
        (0.0, RiskLevel.LOW),
        (0.49, RiskLevel.LOW),
        (0.5, RiskLevel.MEDIUM),
        (0.7, RiskLevel.HIGH),
        (0.8499, RiskLevel.HIGH),
        (0.85, RiskLevel.CRITICAL),
        (1.0, RiskLevel.CRITICAL),
    ])
    def test_boundaries(self, config, confidence, expected):
        assert risk_level_for(confidence, config) == expected

    def test_monotone(self, config):
        levels = [risk_level_for(i / 100, config) for i in range(101)]
        assert levels == sorted(levels)

    def test_tiers(self):
        assert escalation_tier_for(RiskLevel.CRITICAL, False) == EscalationTier.EMERGENCY
        assert escalation_tier_for(RiskLevel.HIGH, True) == EscalationTier.EMERGENCY
        assert escalation_tier_for(RiskLevel.HIGH, False) == EscalationTier.ELEVATED
        assert escalation_tier_for(RiskLevel.MEDIUM, False) == EscalationTier.ELEVATED
        assert escalation_tier_for(RiskLevel.LOW, True) == EscalationTier.NORMAL

    @pytest.mark.parametrize("hour,expected", [
        (21, False), (22, True), (23, True), (0, True), (5, True), (6, False), (12, False),
    ])
    def test_late_night_window_wraps_midnight(self, config, hour, expected):
        assert is_late_night(hour, config) is expected


class TestAssess:
    """End-to-end assessment."""

    def test_two_strong_keywords_are_critical(self, aggregator, config):
        signals = [_signal("kill myself"), _signal("end my life")]

        assessment = aggregator.assess(signals, "user_1", NOON, config)

        assert assessment.confidence == pytest.approx(1 - 0.05 * 0.05)
        assert assessment.risk_level == RiskLevel.CRITICAL
        assert assessment.escalation_tier == EscalationTier.EMERGENCY
        assert assessment.requires_immediate is True
        assert assessment.detected is True
        assert "Immediate intervention required" in assessment.recommendations
        assert "Conduct suicide risk assessment" in assessment.recommendations

    def test_single_high_keyword(self, aggregator, config):
        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", NOON, config
        )

        assert assessment.confidence == pytest.approx(0.765)
        assert assessment.risk_level == RiskLevel.HIGH
        assert assessment.escalation_tier == EscalationTier.ELEVATED
        assert assessment.requires_immediate is False

    def test_lone_weak_keyword_discounted(self, aggregator, config):
        signal = _signal("abused me", Severity.HIGH, 0.8, CrisisCategory.TRAUMA)

        assessment = aggregator.assess([signal], "user_1", NOON, config)

        assert assessment.base_confidence == pytest.approx(0.476)
        assert assessment.confidence == pytest.approx(0.238)
        assert assessment.detected is False
        assert "false_positive_discount" in assessment.adjustments

    def test_weak_keyword_kept_without_reduction(self, aggregator):
        config = DetectionConfig(false_positive_reduction=False)
        signal = _signal("abused me", Severity.HIGH, 0.8, CrisisCategory.TRAUMA)

        assessment = aggregator.assess([signal], "user_1", NOON, config)

        assert assessment.confidence == pytest.approx(0.476)
        assert assessment.detected is True
        assert assessment.risk_level == RiskLevel.LOW

    def test_weak_pattern_not_discounted(self, aggregator, config):
        signal = _signal("burden_statement", Severity.HIGH, 0.7,
                         CrisisCategory.SEVERE_DEPRESSION, SignalKind.PATTERN)

        assessment = aggregator.assess([signal], "user_1", NOON, config)

        assert assessment.confidence == pytest.approx(0.7 * 0.85 * 0.8)

    def test_recent_high_risk_history_raises_confidence(self, aggregator, store, config):
        store.record(_prior_detection("user_1", NOON - timedelta(hours=1)))

        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", NOON, config
        )

        assert assessment.user_history is True
        assert assessment.confidence == pytest.approx(min(0.765 * 1.3, 1.0))
        assert assessment.risk_level == RiskLevel.CRITICAL
        assert "Review previous intervention strategies" in assessment.recommendations

    def test_history_outside_window_ignored(self, aggregator, store, config):
        store.record(_prior_detection("user_1", NOON - timedelta(hours=200)))

        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", NOON, config
        )

        assert assessment.user_history is False
        assert assessment.confidence == pytest.approx(0.765)

    def test_medium_history_ignored(self, aggregator, store, config):
        store.record(_prior_detection("user_1", NOON - timedelta(hours=1), RiskLevel.MEDIUM))

        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", NOON, config
        )

        assert assessment.user_history is False

    def test_other_users_history_ignored(self, aggregator, store, config):
        store.record(_prior_detection("user_2", NOON - timedelta(hours=1)))

        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", NOON, config
        )

        assert assessment.user_history is False

    def test_late_night_weight(self, aggregator, config):
        late = NOON.replace(hour=23)

        assessment = aggregator.assess(
            [_signal("suicide", Severity.HIGH, 0.9)], "user_1", late, config
        )

        assert assessment.late_night is True
        assert assessment.confidence == pytest.approx(0.765 * 1.15)
        assert assessment.risk_level == RiskLevel.CRITICAL

    def test_confidence_clamped(self, aggregator, store, config):
        store.record(_prior_detection("user_1", NOON - timedelta(hours=1)))
        late = NOON.replace(hour=2)

        assessment = aggregator.assess(
            [_signal("kill myself"), _signal("end my life")], "user_1", late, config
        )

        assert assessment.confidence == 1.0

    def test_no_signals(self, aggregator, config):
        assessment = aggregator.assess([], "user_1", NOON.replace(hour=23), config)

        assert assessment.confidence == 0.0
        assert assessment.detected is False
        assert assessment.risk_level == RiskLevel.LOW
