"""Signal extraction: weighted keyword and pattern hits in a message.

Pure and stateless. Safe to call from any number of threads.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from careline.shared.models import RiskSignal, SignalKind
from .config import (
    STAFF_SENDER_ROLES,
    CompiledKeyword,
    CompiledPattern,
    DetectionConfig,
    SignalCatalog,
)
from .text_normalizer import TextNormalizer

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[^\W_]+(?:'[^\W_]+)?")


class SignalExtractor:
    """Finds keyword and pattern signals in one language's catalog."""

    def __init__(self, normalizer: Optional[TextNormalizer] = None):
        self._normalizer = normalizer or TextNormalizer()

    def extract(
        self,
        text: str,
        language: str,
        catalog: SignalCatalog,
        config: DetectionConfig,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> List[RiskSignal]:
        """Return every signal the text triggers, at most one per definition.

        Each definition is tried on the lowercase text, then on the
        normalized text if it missed there.
        """
        if not text or not text.strip():
            return []

        lowered = text.lower()
        normalized = self._normalizer.normalize(text)
        discount = self._sender_discount(metadata, config)

        signals: List[RiskSignal] = []

        if config.keyword_detection:
            for keyword in catalog.keywords_for(language):
                signal = (
                    self._match_keyword(keyword, lowered, language)
                    or self._match_keyword(keyword, normalized, language)
                )
                if signal is not None:
                    signals.append(signal)

        if config.pattern_detection:
            for pattern in catalog.patterns_for(language):
                signal = (
                    self._match_pattern(pattern, lowered, language)
                    or self._match_pattern(pattern, normalized, language)
                )
                if signal is not None:
                    signals.append(signal)

        if discount and signals:
            signals = [_scaled(s, 1.0 - discount) for s in signals]

        return signals

    @staticmethod
    def _sender_discount(metadata: Optional[Mapping[str, Any]], config: DetectionConfig) -> float:
        if not metadata:
            return 0.0
        role = str(metadata.get("sender_role", "")).lower()
        return config.staff_sender_discount if role in STAFF_SENDER_ROLES else 0.0

    @staticmethod
    def _match_keyword(
        keyword: CompiledKeyword,
        text: str,
        language: str,
    ) -> Optional[RiskSignal]:
        match = keyword.regex.search(text)
        if match is None:
            return None

        definition = keyword.definition
        if definition.exclusions and _contains_any(text, definition.exclusions):
            return None
        if definition.context and not _contains_any(text, definition.context):
            return None

        return RiskSignal(
            kind=SignalKind.KEYWORD,
            category=definition.category,
            severity=definition.severity,
            weight=definition.weight,
            value=definition.word,
            span=match.span(),
            language=language,
        )

    @staticmethod
    def _match_pattern(
        pattern: CompiledPattern,
        text: str,
        language: str,
    ) -> Optional[RiskSignal]:
        definition = pattern.definition

        if pattern.regex is not None:
            matches = list(pattern.regex.finditer(text))
            if len(matches) < definition.min_matches:
                return None
            span = (matches[0].start(), matches[-1].end())
        else:
            span = _proximity_span(text, definition.terms, definition.window)
            if span is None:
                return None

        return RiskSignal(
            kind=SignalKind.PATTERN,
            category=definition.category,
            severity=definition.severity,
            weight=definition.weight,
            value=definition.name,
            span=span,
            language=language,
        )


def _contains_any(text: str, words) -> bool:
    return any(re.search(rf"\b{re.escape(w.lower())}\b", text) for w in words)


def _proximity_span(text: str, terms, window: int) -> Optional[Tuple[int, int]]:
    """Span covering all terms within `window` words, or None.

    A term matches a word that starts with it ("wrist" matches "wrists").
    """
    words = [(m.group(0), m.start(), m.end()) for m in _WORD_PATTERN.finditer(text)]
    positions: Dict[str, List[int]] = {term: [] for term in terms}
    for index, (word, _, _) in enumerate(words):
        for term in terms:
            if word.startswith(term.lower()):
                positions[term].append(index)

    if any(not hits for hits in positions.values()):
        return None

    anchor_term = terms[0]
    for anchor in positions[anchor_term]:
        chosen = [anchor]
        for term in terms[1:]:
            near = [i for i in positions[term] if abs(i - anchor) <= window]
            if not near:
                break
            chosen.append(min(near, key=lambda i: abs(i - anchor)))
        else:
            first, last = min(chosen), max(chosen)
            return words[first][1], words[last][2]
    return None


def _scaled(signal: RiskSignal, factor: float) -> RiskSignal:
    return RiskSignal(
        kind=signal.kind,
        category=signal.category,
        severity=signal.severity,
        weight=signal.weight * factor,
        value=signal.value,
        span=signal.span,
        language=signal.language,
    )
