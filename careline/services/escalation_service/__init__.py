"""Escalation service: protocols, contact availability and the per-alert scheduler."""
from .contacts import ContactAvailabilityResolver, ContactDirectory
from .protocols import (
    DEFAULT_PROTOCOLS,
    STANDARD_PROTOCOL,
    URGENT_PROTOCOL,
    ProtocolRegistry,
    protocol_from_dict,
)
from .scheduler import EscalationScheduler

__all__ = [
    "ContactAvailabilityResolver",
    "ContactDirectory",
    "DEFAULT_PROTOCOLS",
    "STANDARD_PROTOCOL",
    "URGENT_PROTOCOL",
    "ProtocolRegistry",
    "protocol_from_dict",
    "EscalationScheduler",
]
