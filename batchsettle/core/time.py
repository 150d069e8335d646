"""
batchsettle/core/time.py

THE ONLY CLOCK IN BATCHSETTLE.

Engine time is integer epoch seconds read from a Clock. Components never call
time.time() directly, so tests can drive timelocks with ManualClock.

Journal wire format: YYYY-MM-DDTHH:MM:SS.mmmZ
                     (milliseconds, explicit Z, no +00:00, no microseconds)
"""

import threading
import time
from datetime import datetime, timezone


class Clock:
    """Source of engine time."""

    def now(self) -> int:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, truncated to whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and simulations to step over withdrawal delays and
    settlement timeouts without sleeping.
    """

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now  = int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError(f"cannot move clock backwards by {seconds}s")
        with self._lock:
            self._now += int(seconds)
            return self._now

    def set(self, epoch_seconds: int) -> None:
        with self._lock:
            if epoch_seconds < self._now:
                raise ValueError("cannot move clock backwards")
            self._now = int(epoch_seconds)


def wire_timestamp(epoch_seconds: int) -> str:
    """
    Render epoch seconds in journal wire format.
    Format: YYYY-MM-DDTHH:MM:SS.mmmZ  (exactly 3 fractional digits, Z suffix)
    """
    dt = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    ms = dt.microsecond // 1000
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"


HOUR = 60 * 60
DAY  = 24 * HOUR
