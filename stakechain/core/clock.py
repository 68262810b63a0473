"""
Ledger Clocks

The host ledger's block timestamp, seen from here as a collaborator.
Contract: values never decrease across calls. The ledger checks this
(see LedgerConfig.enforce_monotonic_timestamps); clocks do not.
"""

import time
from abc import ABC, abstractmethod
from threading import Lock


class Clock(ABC):
    """Source of unix-second timestamps for chain appends."""

    @abstractmethod
    def now(self) -> int:
        pass


class SystemClock(Clock):
    """Wall-clock seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and the sample-data simulator to stand in for
    block timestamps.
    """

    def __init__(self, start: int = 0):
        self._now = start
        self._lock = Lock()

    def now(self) -> int:
        return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            self._now = timestamp

    def advance(self, seconds: int) -> int:
        """Move forward and return the new time."""
        if seconds < 0:
            raise ValueError(f"Cannot advance a clock by {seconds} seconds")
        with self._lock:
            self._now += seconds
            return self._now
