"""Clock ports and system adapters.

Two notions of time are used throughout devicelink:

- **Monotonic** (:class:`ClockPort`) — elapsed-time measurements such as
  health-probe latency and process uptime.  ``time.monotonic()`` is immune
  to NTP adjustments, so only *differences* between ``now()`` calls are
  meaningful (PEP 418).
- **Wall clock** (:data:`WallClock`) — timestamps written to durable
  records (``last_connected_at``, ``saved_at``, ``assigned_at``).  Always
  timezone-aware UTC.

Both are injected so tests can pin time deterministically.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

WallClock = Callable[[], datetime]
"""Callable returning the current timezone-aware UTC datetime."""


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for timing measurements.

    The default implementation wraps ``time.monotonic()``. Tests
    inject a deterministic fake clock for reproducible timing.
    """

    def now(self) -> float:
        """Return monotonic time in seconds.

        Returns:
            A float representing seconds from an arbitrary epoch.
            Only the *difference* between two calls is meaningful.
        """
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``.

    Satisfies :class:`ClockPort` via structural subtyping (PEP 544).
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()


def utc_now() -> datetime:
    """Default :data:`WallClock` — ``datetime.now(UTC)``."""
    return datetime.now(UTC)
