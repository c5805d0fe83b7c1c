"""Alert service: emergency alert lifecycle, persistence and metrics."""
from .manager import AlertManager
from .metrics import compute_alert_metrics
from .store import AlertStore, InMemoryAlertStore, PostgresAlertStore

__all__ = [
    "AlertManager",
    "compute_alert_metrics",
    "AlertStore",
    "InMemoryAlertStore",
    "PostgresAlertStore",
]
