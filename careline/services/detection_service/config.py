"""Detection thresholds, context weights and the crisis signal catalog.

The catalog is static data: keyword and pattern definitions grouped by
language. It is never mutated at runtime, only replaced wholesale when
configuration is reloaded.
"""
import json
import logging
import os
import re
import threading
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from careline.shared.errors import ConfigurationError
from careline.shared.models import CrisisCategory, Severity

logger = logging.getLogger(__name__)


# Contribution multiplier per definition severity
SEVERITY_FACTORS: Dict[Severity, float] = {
    Severity.LOW: 0.4,
    Severity.MEDIUM: 0.6,
    Severity.HIGH: 0.85,
    Severity.CRITICAL: 1.0,
}

# How strongly each category counts toward crisis confidence
CATEGORY_BASE_WEIGHTS: Dict[CrisisCategory, float] = {
    CrisisCategory.SUICIDE: 1.0,
    CrisisCategory.SELF_HARM: 0.95,
    CrisisCategory.VIOLENCE: 0.9,
    CrisisCategory.SEVERE_DEPRESSION: 0.8,
    CrisisCategory.SUBSTANCE_ABUSE: 0.75,
    CrisisCategory.EATING_DISORDER: 0.75,
    CrisisCategory.TRAUMA: 0.7,
    CrisisCategory.PANIC: 0.65,
}

# Sender roles whose messages are quoted or clinical, not first-person
STAFF_SENDER_ROLES: FrozenSet[str] = frozenset({"therapist", "admin", "system"})


@dataclass(frozen=True)
class DetectionConfig:
    """Tunable detection behaviour. Validated on construction."""

    enabled: bool = True
    keyword_detection: bool = True
    pattern_detection: bool = True

    # Confidence cut-offs; must be ordered
    confidence_threshold: float = 0.3
    medium_threshold: float = 0.5
    high_threshold: float = 0.7
    escalation_threshold: float = 0.85

    languages: Tuple[str, ...] = ("en", "es")

    # Context adjustments
    user_history_weight: float = 0.3
    history_window_hours: int = 168
    time_factor_weight: float = 0.15
    late_night_start_hour: int = 22
    late_night_end_hour: int = 6

    # False-positive reduction for lone, weak keyword hits
    false_positive_reduction: bool = True
    weak_signal_weight: float = 0.5
    false_positive_discount: float = 0.5
    staff_sender_discount: float = 0.5

    # Version tracking for audit trail
    pattern_version: str = "2026.01.14"

    def __post_init__(self):
        for name in (
            "confidence_threshold",
            "medium_threshold",
            "high_threshold",
            "escalation_threshold",
            "weak_signal_weight",
            "false_positive_discount",
            "staff_sender_discount",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be 0.0-1.0, got {value}")

        ordered = (
            self.confidence_threshold,
            self.medium_threshold,
            self.high_threshold,
            self.escalation_threshold,
        )
        if list(ordered) != sorted(ordered):
            raise ConfigurationError(
                "Thresholds must satisfy confidence <= medium <= high <= escalation"
            )

        for name in ("user_history_weight", "time_factor_weight"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")

        if self.history_window_hours < 0:
            raise ConfigurationError("history_window_hours must be >= 0")

        for name in ("late_night_start_hour", "late_night_end_hour"):
            if not 0 <= getattr(self, name) <= 23:
                raise ConfigurationError(f"{name} must be 0-23")

        if not self.languages:
            raise ConfigurationError("At least one language must be configured")

    @property
    def default_language(self) -> str:
        return self.languages[0]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["languages"] = list(self.languages)
        return data

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        base: Optional["DetectionConfig"] = None,
    ) -> "DetectionConfig":
        """Build a config from camelCase or snake_case keys.

        Keys not present keep the value from `base` (or the default).

        Raises:
            ConfigurationError: unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        values = asdict(base) if base is not None else {}
        for key, value in data.items():
            name = _snake_case(key)
            if name not in known:
                raise ConfigurationError(f"Unknown detection config key: {key}")
            values[name] = value

        if "languages" in values:
            languages = values["languages"]
            if isinstance(languages, str):
                languages = [part.strip() for part in languages.split(",") if part.strip()]
            values["languages"] = tuple(languages)

        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        """Create config from environment variables.

        Environment variables:
            CARELINE_DETECTION_ENABLED (default true)
            CARELINE_CONFIDENCE_THRESHOLD (default 0.3)
            CARELINE_ESCALATION_THRESHOLD (default 0.85)
            CARELINE_LANGUAGES (comma separated, default en,es)
            CARELINE_FALSE_POSITIVE_REDUCTION (default true)
        """
        overrides: Dict[str, Any] = {}
        if "CARELINE_DETECTION_ENABLED" in os.environ:
            overrides["enabled"] = os.environ["CARELINE_DETECTION_ENABLED"].lower() == "true"
        if "CARELINE_CONFIDENCE_THRESHOLD" in os.environ:
            overrides["confidence_threshold"] = float(os.environ["CARELINE_CONFIDENCE_THRESHOLD"])
        if "CARELINE_ESCALATION_THRESHOLD" in os.environ:
            overrides["escalation_threshold"] = float(os.environ["CARELINE_ESCALATION_THRESHOLD"])
        if "CARELINE_LANGUAGES" in os.environ:
            overrides["languages"] = os.environ["CARELINE_LANGUAGES"]
        if "CARELINE_FALSE_POSITIVE_REDUCTION" in os.environ:
            overrides["false_positive_reduction"] = (
                os.environ["CARELINE_FALSE_POSITIVE_REDUCTION"].lower() == "true"
            )
        return cls.from_dict(overrides)


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


@dataclass(frozen=True)
class KeywordDefinition:
    """A weighted crisis keyword or phrase.

    context: at least one of these words must appear for the keyword
        to count (empty means no requirement).
    exclusions: any of these words appearing cancels the keyword.
    """
    word: str
    category: CrisisCategory
    severity: Severity
    weight: float
    language: str = "en"
    context: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.weight <= 1.0:
            raise ConfigurationError(f"Keyword weight must be 0.0-1.0, got {self.weight}")
        if not self.word.strip():
            raise ConfigurationError("Keyword must not be empty")


@dataclass(frozen=True)
class PatternDefinition:
    """A named multi-word crisis pattern.

    kind "regex": `pattern` must match at least `min_matches` times.
    kind "proximity": every word in `terms` must appear within
        `window` words of each other.
    """
    name: str
    category: CrisisCategory
    severity: Severity
    weight: float
    kind: str = "regex"
    pattern: str = ""
    min_matches: int = 1
    terms: Tuple[str, ...] = ()
    window: int = 6
    language: str = "en"

    def __post_init__(self):
        if not 0.0 <= self.weight <= 1.0:
            raise ConfigurationError(f"Pattern weight must be 0.0-1.0, got {self.weight}")
        if self.kind == "regex":
            if not self.pattern:
                raise ConfigurationError(f"Regex pattern '{self.name}' has no pattern")
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ConfigurationError(f"Pattern '{self.name}' does not compile: {e}") from e
            if self.min_matches < 1:
                raise ConfigurationError("min_matches must be >= 1")
        elif self.kind == "proximity":
            if len(self.terms) < 2 or self.window < 1:
                raise ConfigurationError(
                    f"Proximity pattern '{self.name}' needs 2+ terms and a positive window"
                )
        else:
            raise ConfigurationError(f"Unknown pattern kind: {self.kind}")


DEFAULT_KEYWORDS: Tuple[KeywordDefinition, ...] = (
    # Direct suicidal language
    KeywordDefinition("kill myself", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.95),
    KeywordDefinition("end my life", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.95),
    KeywordDefinition("want to die", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.9),
    KeywordDefinition("take my own life", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.95),
    KeywordDefinition(
        "suicide", CrisisCategory.SUICIDE, Severity.HIGH, 0.9,
        exclusions=("prevention", "awareness", "hotline", "squad"),
    ),
    KeywordDefinition("suicidal", CrisisCategory.SUICIDE, Severity.HIGH, 0.9),
    KeywordDefinition("no reason to live", CrisisCategory.SUICIDE, Severity.HIGH, 0.85),
    KeywordDefinition("better off without me", CrisisCategory.SUICIDE, Severity.HIGH, 0.85),
    KeywordDefinition("unalive", CrisisCategory.SUICIDE, Severity.HIGH, 0.8),

    # Self-harm
    KeywordDefinition("cut myself", CrisisCategory.SELF_HARM, Severity.HIGH, 0.85),
    KeywordDefinition("hurt myself", CrisisCategory.SELF_HARM, Severity.HIGH, 0.8),
    KeywordDefinition("burn myself", CrisisCategory.SELF_HARM, Severity.HIGH, 0.8),
    KeywordDefinition(
        "cutting", CrisisCategory.SELF_HARM, Severity.MEDIUM, 0.6,
        context=("myself", "arms", "wrist", "wrists", "legs"),
        exclusions=("paper", "hair", "vegetables", "coupons"),
    ),

    # Violence toward others
    KeywordDefinition("hurt someone", CrisisCategory.VIOLENCE, Severity.HIGH, 0.8),
    KeywordDefinition(
        "kill", CrisisCategory.VIOLENCE, Severity.HIGH, 0.7,
        context=("him", "her", "them", "everyone", "you"),
        exclusions=("time", "game", "joke", "myself"),
    ),

    # Substance abuse
    KeywordDefinition("overdose", CrisisCategory.SUBSTANCE_ABUSE, Severity.HIGH, 0.8),
    KeywordDefinition("took too many pills", CrisisCategory.SUBSTANCE_ABUSE, Severity.CRITICAL, 0.9),
    KeywordDefinition("drinking again", CrisisCategory.SUBSTANCE_ABUSE, Severity.MEDIUM, 0.55),

    # Severe depression
    KeywordDefinition("hopeless", CrisisCategory.SEVERE_DEPRESSION, Severity.MEDIUM, 0.6),
    KeywordDefinition("worthless", CrisisCategory.SEVERE_DEPRESSION, Severity.MEDIUM, 0.6),
    KeywordDefinition("can't go on", CrisisCategory.SEVERE_DEPRESSION, Severity.HIGH, 0.75),
    KeywordDefinition("nothing matters", CrisisCategory.SEVERE_DEPRESSION, Severity.MEDIUM, 0.55),

    # Panic
    KeywordDefinition("panic attack", CrisisCategory.PANIC, Severity.MEDIUM, 0.7),
    KeywordDefinition(
        "can't breathe", CrisisCategory.PANIC, Severity.MEDIUM, 0.55,
        context=("panic", "scared", "chest", "heart"),
    ),

    # Eating disorder
    KeywordDefinition("starving myself", CrisisCategory.EATING_DISORDER, Severity.HIGH, 0.8),
    KeywordDefinition("make myself throw up", CrisisCategory.EATING_DISORDER, Severity.HIGH, 0.8),

    # Trauma
    KeywordDefinition("flashbacks", CrisisCategory.TRAUMA, Severity.MEDIUM, 0.6),
    KeywordDefinition("abused me", CrisisCategory.TRAUMA, Severity.HIGH, 0.8),

    # Spanish
    KeywordDefinition("matarme", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.95, language="es"),
    KeywordDefinition("quitarme la vida", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.95, language="es"),
    KeywordDefinition("quiero morir", CrisisCategory.SUICIDE, Severity.CRITICAL, 0.9, language="es"),
    KeywordDefinition(
        "suicidio", CrisisCategory.SUICIDE, Severity.HIGH, 0.9, language="es",
        exclusions=("prevención", "prevencion"),
    ),
    KeywordDefinition("hacerme daño", CrisisCategory.SELF_HARM, Severity.HIGH, 0.8, language="es"),
    KeywordDefinition("sin esperanza", CrisisCategory.SEVERE_DEPRESSION, Severity.MEDIUM, 0.6, language="es"),
)


DEFAULT_PATTERNS: Tuple[PatternDefinition, ...] = (
    PatternDefinition(
        name="plan_with_means",
        category=CrisisCategory.SUICIDE,
        severity=Severity.CRITICAL,
        weight=0.9,
        pattern=r"\b(plan|planning|going)\b.{0,40}\b(pills|rope|gun|bridge|overdose)\b",
    ),
    PatternDefinition(
        name="farewell_message",
        category=CrisisCategory.SUICIDE,
        severity=Severity.HIGH,
        weight=0.75,
        pattern=r"\b(goodbye|farewell)\b.{0,30}\b(everyone|forever|world)\b",
    ),
    PatternDefinition(
        name="burden_statement",
        category=CrisisCategory.SEVERE_DEPRESSION,
        severity=Severity.HIGH,
        weight=0.7,
        pattern=r"\b(i am|i'm|im) (just |such )?a burden\b",
    ),
    PatternDefinition(
        name="hopelessness_cluster",
        category=CrisisCategory.SEVERE_DEPRESSION,
        severity=Severity.HIGH,
        weight=0.7,
        pattern=r"\b(hopeless|worthless|pointless|empty|numb|trapped)\b",
        min_matches=3,
    ),
    PatternDefinition(
        name="wrist_cutting",
        category=CrisisCategory.SELF_HARM,
        severity=Severity.HIGH,
        weight=0.85,
        kind="proximity",
        terms=("cut", "wrist"),
        window=5,
    ),
    PatternDefinition(
        name="desire_to_die_es",
        category=CrisisCategory.SUICIDE,
        severity=Severity.HIGH,
        weight=0.85,
        kind="proximity",
        terms=("quiero", "morirme"),
        window=4,
        language="es",
    ),
)


@dataclass(frozen=True)
class CompiledKeyword:
    definition: KeywordDefinition
    regex: "re.Pattern"


@dataclass(frozen=True)
class CompiledPattern:
    definition: PatternDefinition
    regex: Optional["re.Pattern"] = None


@dataclass(frozen=True)
class SignalCatalog:
    """Compiled keyword and pattern definitions, grouped by language."""
    keywords: Dict[str, Tuple[CompiledKeyword, ...]] = field(default_factory=dict)
    patterns: Dict[str, Tuple[CompiledPattern, ...]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        keywords: Iterable[KeywordDefinition],
        patterns: Iterable[PatternDefinition],
    ) -> "SignalCatalog":
        grouped_keywords: Dict[str, List[CompiledKeyword]] = {}
        for keyword in keywords:
            # Word boundaries prevent partial matches ("cut" vs "cute")
            regex = re.compile(rf"\b{re.escape(keyword.word.lower())}\b", re.IGNORECASE)
            grouped_keywords.setdefault(keyword.language, []).append(
                CompiledKeyword(keyword, regex)
            )

        grouped_patterns: Dict[str, List[CompiledPattern]] = {}
        for pattern in patterns:
            regex = re.compile(pattern.pattern, re.IGNORECASE) if pattern.kind == "regex" else None
            grouped_patterns.setdefault(pattern.language, []).append(
                CompiledPattern(pattern, regex)
            )

        return cls(
            keywords={lang: tuple(items) for lang, items in grouped_keywords.items()},
            patterns={lang: tuple(items) for lang, items in grouped_patterns.items()},
        )

    @classmethod
    def default(cls) -> "SignalCatalog":
        return cls.build(DEFAULT_KEYWORDS, DEFAULT_PATTERNS)

    @property
    def languages(self) -> FrozenSet[str]:
        return frozenset(self.keywords) | frozenset(self.patterns)

    def keywords_for(self, language: str) -> Tuple[CompiledKeyword, ...]:
        return self.keywords.get(language, ())

    def patterns_for(self, language: str) -> Tuple[CompiledPattern, ...]:
        return self.patterns.get(language, ())


def load_catalog(data: Mapping[str, Any]) -> SignalCatalog:
    """Build a catalog from plain data (e.g. a JSON config file).

    Expects optional "keywords" and "patterns" lists; missing lists
    fall back to the built-in defaults.

    Raises:
        ConfigurationError: a definition is malformed
    """
    try:
        keywords = tuple(
            KeywordDefinition(
                word=item["word"],
                category=CrisisCategory(item["category"]),
                severity=Severity(item["severity"]),
                weight=float(item["weight"]),
                language=item.get("language", "en"),
                context=tuple(item.get("context", ())),
                exclusions=tuple(item.get("exclusions", ())),
            )
            for item in data["keywords"]
        ) if "keywords" in data else DEFAULT_KEYWORDS

        patterns = tuple(
            PatternDefinition(
                name=item["name"],
                category=CrisisCategory(item["category"]),
                severity=Severity(item["severity"]),
                weight=float(item["weight"]),
                kind=item.get("kind", "regex"),
                pattern=item.get("pattern", ""),
                min_matches=int(item.get("min_matches", 1)),
                terms=tuple(item.get("terms", ())),
                window=int(item.get("window", 6)),
                language=item.get("language", "en"),
            )
            for item in data["patterns"]
        ) if "patterns" in data else DEFAULT_PATTERNS
    except (KeyError, TypeError, ValueError) as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(f"Malformed signal definition: {e}") from e

    return SignalCatalog.build(keywords, patterns)


class ConfigProvider:
    """Holds the active DetectionConfig and SignalCatalog.

    Readers take a consistent snapshot; reloads swap both atomically.
    A reload that fails validation leaves the previous state active.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        catalog: Optional[SignalCatalog] = None,
    ):
        self._lock = threading.Lock()
        self._config = config or DetectionConfig()
        self._catalog = catalog or SignalCatalog.default()

    @property
    def config(self) -> DetectionConfig:
        with self._lock:
            return self._config

    @property
    def catalog(self) -> SignalCatalog:
        with self._lock:
            return self._catalog

    def snapshot(self) -> Tuple[DetectionConfig, SignalCatalog]:
        with self._lock:
            return self._config, self._catalog

    def reload(self, data: Mapping[str, Any]) -> DetectionConfig:
        """Apply config overrides and, if present, new signal definitions.

        Raises:
            ConfigurationError: the new config is invalid; nothing changed
        """
        settings = {k: v for k, v in data.items() if k not in ("keywords", "patterns")}
        with self._lock:
            current_config, current_catalog = self._config, self._catalog

        try:
            new_config = DetectionConfig.from_dict(settings, base=current_config)
            if "keywords" in data or "patterns" in data:
                new_catalog = load_catalog(data)
            else:
                new_catalog = current_catalog
        except ConfigurationError as e:
            logger.warning(
                "DETECTION_CONFIG_RELOAD_REJECTED",
                extra={"error": str(e), "pattern_version": current_config.pattern_version}
            )
            raise

        with self._lock:
            self._config = new_config
            self._catalog = new_catalog

        logger.info(
            "DETECTION_CONFIG_RELOADED",
            extra={
                "pattern_version": new_config.pattern_version,
                "confidence_threshold": new_config.confidence_threshold,
                "escalation_threshold": new_config.escalation_threshold,
                "languages": list(new_config.languages),
            }
        )
        return new_config

    def reload_from_file(self, path: str) -> DetectionConfig:
        """Reload from a JSON file containing config keys and optional definitions."""
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            logger.warning(
                "DETECTION_CONFIG_RELOAD_REJECTED",
                extra={"path": path, "error": str(e)}
            )
            raise ConfigurationError(f"Cannot read detection config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Detection config {path} must be a JSON object")
        return self.reload(data)

    @classmethod
    def from_env(cls) -> "ConfigProvider":
        """Env-based config, then CARELINE_DETECTION_CONFIG_FILE if set."""
        provider = cls(DetectionConfig.from_env())
        path = os.getenv("CARELINE_DETECTION_CONFIG_FILE")
        if path:
            provider.reload_from_file(path)
        return provider
