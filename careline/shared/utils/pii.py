"""PII handling utilities: no raw identifiers or message text in logs.

User identifiers are hashed before logging. Message text is never
logged or stored; only its fingerprint is kept.
"""
import hashlib
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from PII_HASH_SALT / Secrets Manager at startup
_PII_SALT: Optional[str] = None

_SANITIZE_RULES = (
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (
        re.compile(
            r"\b\d{1,5}\s+\w+\s+(Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd)\b",
            re.IGNORECASE,
        ),
        "[ADDRESS]",
    ),
)


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.

    Must be called during application startup before any PII hashing.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < 32:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": 32}
        )
        raise ValueError("PII salt must be at least 32 characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def is_pii_salt_configured() -> bool:
    return _PII_SALT is not None


def hash_pii(value: str) -> str:
    """Hash a PII value for safe logging and storage.

    Uses SHA-256 with a secret salt to create a consistent,
    non-reversible hash of user identifiers.

    Raises:
        RuntimeError: If PII salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """SHA-256 fingerprint of message text for the audit trail."""
    return hashlib.sha256(text.encode()).hexdigest()


def sanitize_content(text: str) -> str:
    """Mask SSNs, phone numbers, emails and street addresses.

    Used before any free text leaves the engine in a notification.
    """
    for pattern, replacement in _SANITIZE_RULES:
        text = pattern.sub(replacement, text)
    return text
