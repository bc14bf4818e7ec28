"""Time sources used by the scheduler and the sensor adapter."""
from __future__ import annotations

import threading
import time

from .models import SampleTimestamp


class SystemClock:
    """Reads the host clocks and sleeps on a stop event."""

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()

    def now(self) -> SampleTimestamp:
        return SampleTimestamp(wall=self.time(), monotonic=self.monotonic())

    def wait(self, event: threading.Event, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if ``event`` was set."""
        if timeout <= 0:
            return event.is_set()
        return event.wait(timeout)
