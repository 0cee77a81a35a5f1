"""
Timed reentrant locks guarding the estimator partitions.
"""
import logging
import threading
from contextlib import contextmanager

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


class TimedRLock:
    """
    A reentrant lock whose acquisition waits at most ``timeout`` seconds.

    A timed-out acquisition is logged as a liveness warning and raised as
    LockTimeout; it is never silently ignored.
    """

    def __init__(self, name: str, timeout: float = 5.0):
        self.name = name
        self.timeout = timeout
        self._lock = threading.RLock()

    def acquire(self, operation: str = "") -> None:
        if not self._lock.acquire(timeout=self.timeout):
            logger.warning(
                f"[{operation or 'acquire'}] {self.name} lock not acquired within "
                f"{self.timeout:.3f}s; possible contention or deadlock"
            )
            raise LockTimeout(f"{self.name} lock timed out after {self.timeout}s")

    def release(self) -> None:
        self._lock.release()

    @contextmanager
    def hold(self, operation: str = ""):
        """Context manager form of acquire/release."""
        self.acquire(operation)
        try:
            yield self
        finally:
            self._lock.release()

    def __repr__(self) -> str:
        return f"TimedRLock({self.name!r}, timeout={self.timeout})"
