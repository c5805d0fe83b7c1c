"""Shared utilities for the crisis engine."""
from .pii import (
    configure_pii_salt,
    hash_pii,
    hash_text_for_audit,
    is_pii_salt_configured,
    sanitize_content,
)
from .clock import CancellationToken, Clock, ManualClock, SystemClock

__all__ = [
    "configure_pii_salt",
    "hash_pii",
    "hash_text_for_audit",
    "is_pii_salt_configured",
    "sanitize_content",
    "CancellationToken",
    "Clock",
    "ManualClock",
    "SystemClock",
]
