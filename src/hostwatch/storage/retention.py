"""Background retention pass for the time-series store."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from ..errors import StoreError
from ..models import RetentionPolicy
from .timeseries import TimeSeriesStore

LOGGER = logging.getLogger(__name__)


class RetentionWorker:
    """Periodically evicts the oldest batches once a bound is exceeded."""

    def __init__(self, store: TimeSeriesStore, policy: RetentionPolicy, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._policy = policy
        self._interval = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self.passes = 0
        self.evicted_batches = 0
        self.failed_passes = 0

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Run a single retention pass and return the number of evicted batches."""
        with self._lock:
            try:
                evicted = self._store.enforce_retention(self._policy)
            except StoreError as exc:
                self.failed_passes += 1
                LOGGER.error("Retention pass failed: %s", exc)
                return 0
            self.passes += 1
            self.evicted_batches += evicted
            return evicted

    def start(self) -> None:
        """Start the background retention thread."""
        if self.running:
            LOGGER.warning("Retention worker is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="hostwatch-retention", daemon=True)
        self._thread.start()
        LOGGER.info("Started retention worker (every %.1fs)", self._interval)

    def stop(self) -> None:
        """Stop the thread, waiting for a pass in progress to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join()
            self._thread = None
            LOGGER.info("Stopped retention worker")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self._interval):
                break
