"""Local clock used for deadlines and backoff.

Only durations measured inside one process go through this clock (acquire
deadlines, backoff waits, heartbeat pacing). Liveness across processes
always uses the store's clock, see ``dbsemaphore.core.dialect``.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def monotonic(self) -> float:
        """Seconds from an arbitrary, never-decreasing origin."""
        ...

    def wait(self, event: threading.Event, timeout: float) -> bool:
        """Block until ``event`` is set or ``timeout`` seconds of this clock pass.

        Returns whether the event was set.
        """
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, event: threading.Event, timeout: float) -> bool:
        return event.wait(timeout)


SYSTEM_CLOCK = SystemClock()


__all__ = ["Clock", "SystemClock", "SYSTEM_CLOCK"]
