"""Injectable clocks and the per-alert cancellation token.

Every wait in the escalation path goes through a Clock so tests can
drive time by hand. A wait always returns early when its token is
cancelled or nudged.
"""
import threading
import time
from datetime import datetime, timedelta
from typing import Optional


class CancellationToken:
    """Stop signal for one escalation run.

    cancel() is permanent. nudge() wakes a waiter once so it can
    re-read alert state (used for manual escalation).
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._cancelled = False
        self._nudged = False

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def nudge(self) -> None:
        with self._cond:
            self._nudged = True
            self._cond.notify_all()

    def wait(self, timeout: Optional[float]) -> bool:
        """Block up to `timeout` seconds.

        Returns:
            True if cancelled or nudged (the nudge is consumed),
            False if the timeout elapsed.
        """
        with self._cond:
            if not (self._cancelled or self._nudged):
                self._cond.wait(timeout)
            interrupted = self._cancelled or self._nudged
            self._nudged = False
            return interrupted


class Clock:
    """Time source for the engine."""

    def now(self) -> datetime:
        raise NotImplementedError

    def wait(self, token: CancellationToken, seconds: float) -> bool:
        """Sleep for `seconds` unless interrupted. True if interrupted."""
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock (naive UTC)."""

    def now(self) -> datetime:
        return datetime.utcnow()

    def wait(self, token: CancellationToken, seconds: float) -> bool:
        return token.wait(max(0.0, seconds))


class ManualClock(Clock):
    """Deterministic clock for tests.

    With auto_advance=True every wait jumps virtual time to its deadline
    immediately. Otherwise waits block until advance() moves time past
    their deadline.
    """

    _POLL_SECONDS = 0.005

    def __init__(self, start: Optional[datetime] = None, auto_advance: bool = False):
        self._lock = threading.Lock()
        self._now = start or datetime(2026, 1, 14, 12, 0, 0)
        self.auto_advance = auto_advance
        self._waiting = 0

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value

    @property
    def waiting(self) -> int:
        """Number of threads currently blocked in wait()."""
        with self._lock:
            return self._waiting

    def wait(self, token: CancellationToken, seconds: float) -> bool:
        if self.auto_advance:
            if token.wait(0):
                return True
            self.advance(seconds)
            return False

        deadline = self.now() + timedelta(seconds=seconds)
        with self._lock:
            self._waiting += 1
        try:
            while True:
                if token.wait(self._POLL_SECONDS):
                    return True
                if self.now() >= deadline:
                    return False
        finally:
            with self._lock:
                self._waiting -= 1

    def wait_for_waiters(self, count: int = 1, timeout: float = 2.0) -> bool:
        """Block (real time) until `count` threads are parked in wait()."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.waiting >= count:
                return True
            time.sleep(self._POLL_SECONDS)
        return False
