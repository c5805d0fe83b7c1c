"""Detection service: scores messages for crisis risk."""
from .aggregator import RiskAggregator, RiskAssessment, risk_level_for
from .config import (
    ConfigProvider,
    DetectionConfig,
    KeywordDefinition,
    PatternDefinition,
    SignalCatalog,
    load_catalog,
)
from .detector import CrisisDetectionService, DetectionWorkerPool, MessageAnalyzer
from .extractor import SignalExtractor
from .store import DetectionStore, InMemoryDetectionStore, PostgresDetectionStore
from .text_normalizer import TextNormalizer

__all__ = [
    "RiskAggregator",
    "RiskAssessment",
    "risk_level_for",
    "ConfigProvider",
    "DetectionConfig",
    "KeywordDefinition",
    "PatternDefinition",
    "SignalCatalog",
    "load_catalog",
    "CrisisDetectionService",
    "DetectionWorkerPool",
    "MessageAnalyzer",
    "SignalExtractor",
    "DetectionStore",
    "InMemoryDetectionStore",
    "PostgresDetectionStore",
    "TextNormalizer",
]
