"""Monotonic clock port and system adapter.

The polling scheduler computes tick deadlines from a monotonic clock so
that NTP corrections never shift the refresh cadence, and the health
reporter derives uptime from the same source.  Only differences between
two ``now()`` readings carry meaning.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic time source in seconds.

    Tests inject a fake implementation to make deadlines and uptime
    deterministic.
    """

    def now(self) -> float: ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()
