"""Tests for SignalExtractor."""
import pytest

from careline.shared.models import CrisisCategory, SignalKind
from careline.services.detection_service.config import DetectionConfig, SignalCatalog
from careline.services.detection_service.extractor import SignalExtractor


@pytest.fixture
def extractor():
    return SignalExtractor()


@pytest.fixture
def catalog():
    return SignalCatalog.default()


@pytest.fixture
def config():
    return DetectionConfig()


def _values(signals):
    return {s.value for s in signals}


class TestKeywordSignals:
    """Keyword matching with context and exclusions."""

    def test_direct_suicidal_language(self, extractor, catalog, config):
        signals = extractor.extract("I want to kill myself", "en", catalog, config)

        assert _values(signals) == {"kill myself"}
        signal = signals[0]
        assert signal.kind == SignalKind.KEYWORD
        assert signal.category == CrisisCategory.SUICIDE
        assert signal.span == (10, 21)

    def test_case_insensitive(self, extractor, catalog, config):
        signals = extractor.extract("I WANT TO END MY LIFE", "en", catalog, config)

        assert "end my life" in _values(signals)

    def test_word_boundaries(self, extractor, catalog, config):
        """Keywords only match whole words."""
        signals = extractor.extract("The cutest puppy", "en", catalog, config)

        assert signals == []

    def test_exclusion_cancels_keyword(self, extractor, catalog, config):
        signals = extractor.extract(
            "We talked about suicide prevention at school", "en", catalog, config
        )

        assert "suicide" not in _values(signals)

    def test_context_required(self, extractor, catalog, config):
        without_context = extractor.extract("I was cutting coupons", "en", catalog, config)
        with_context = extractor.extract("I keep cutting my arms", "en", catalog, config)

        assert "cutting" not in _values(without_context)
        assert "cutting" in _values(with_context)

    def test_obfuscated_text_matches_after_normalization(self, extractor, catalog, config):
        signals = extractor.extract("i want to k1ll mys3lf", "en", catalog, config)

        assert "kill myself" in _values(signals)

    def test_language_scoped(self, extractor, catalog, config):
        spanish = extractor.extract("quiero morir", "es", catalog, config)
        english = extractor.extract("quiero morir", "en", catalog, config)

        assert "quiero morir" in _values(spanish)
        assert spanish[0].language == "es"
        assert english == []

    def test_empty_text(self, extractor, catalog, config):
        assert extractor.extract("   ", "en", catalog, config) == []

    def test_keyword_detection_disabled(self, extractor, catalog):
        config = DetectionConfig(keyword_detection=False)

        signals = extractor.extract("I want to kill myself", "en", catalog, config)

        assert signals == []


class TestPatternSignals:
    """Regex and proximity patterns."""

    def test_regex_min_matches(self, extractor, catalog, config):
        two = extractor.extract("I feel hopeless and worthless", "en", catalog, config)
        three = extractor.extract("I feel hopeless, worthless and numb", "en", catalog, config)

        assert "hopelessness_cluster" not in _values(two)
        assert "hopelessness_cluster" in _values(three)

    def test_plan_with_means(self, extractor, catalog, config):
        signals = extractor.extract(
            "I have a plan and I saved up the pills", "en", catalog, config
        )

        pattern = [s for s in signals if s.value == "plan_with_means"]
        assert pattern and pattern[0].kind == SignalKind.PATTERN

    def test_proximity(self, extractor, catalog, config):
        near = extractor.extract("I want to cut my wrist tonight", "en", catalog, config)
        far = extractor.extract(
            "I cut the bread this morning and later my wrist started hurting after tennis",
            "en", catalog, config,
        )

        assert "wrist_cutting" in _values(near)
        assert "wrist_cutting" not in _values(far)

    def test_pattern_detection_disabled(self, extractor, catalog):
        config = DetectionConfig(pattern_detection=False)

        signals = extractor.extract("I feel hopeless, worthless and numb", "en", catalog, config)

        assert all(s.kind == SignalKind.KEYWORD for s in signals)


class TestSenderRole:
    """Staff messages are down-weighted."""

    def test_therapist_message_discounted(self, extractor, catalog, config):
        user = extractor.extract("I want to kill myself", "en", catalog, config)
        staff = extractor.extract(
            "I want to kill myself", "en", catalog, config,
            metadata={"sender_role": "therapist"},
        )

        assert staff[0].weight == pytest.approx(user[0].weight * 0.5)

    def test_client_message_not_discounted(self, extractor, catalog, config):
        signals = extractor.extract(
            "I want to kill myself", "en", catalog, config,
            metadata={"sender_role": "client"},
        )

        assert signals[0].weight == pytest.approx(0.95)
