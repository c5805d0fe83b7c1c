"""Error taxonomy for the crisis engine.

Detection errors are absorbed (logged, treated as no detection).
Alert state errors are always raised to the caller.
Channel errors drive the dispatcher's retry decision.
"""
from typing import Optional


class CarelineError(Exception):
    """Base exception for all engine errors."""
    pass


class AnalysisFailure(CarelineError):
    """Signal extraction or risk aggregation failed for a message."""

    def __init__(self, message_id: str, cause: Optional[BaseException] = None):
        self.message_id = message_id
        self.cause = cause
        super().__init__(f"Analysis failed for message {message_id}: {cause!r}")


class InvalidTransition(CarelineError):
    """Alert state machine violation. Nothing was changed."""

    def __init__(self, alert_id: str, current_status: str, operation: str):
        self.alert_id = alert_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} alert {alert_id} in status '{current_status}'"
        )


class AlertNotFound(CarelineError):
    """No alert (or notification) with the given id."""
    pass


class ChannelTransientFailure(CarelineError):
    """Network/timeout/throttling failure - safe to retry."""
    pass


class ChannelPermanentFailure(CarelineError):
    """Channel rejected the notification - retrying will not help."""
    pass


class DispatchCancelled(CarelineError):
    """Escalation for the alert was stopped before this send attempt."""
    pass


class ConfigurationError(CarelineError, ValueError):
    """Configuration failed validation."""
    pass
