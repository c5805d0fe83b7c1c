"""Crisis engine: detection wired to alerting and escalation."""
from .engine import CrisisEngine, EngineContext, create_schema

__all__ = [
    "CrisisEngine",
    "EngineContext",
    "create_schema",
]
