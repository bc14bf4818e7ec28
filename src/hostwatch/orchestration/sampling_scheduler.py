"""Periodic sampling loop."""
from __future__ import annotations

import logging
import math
import random
import threading
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from ..clock import SystemClock
from ..errors import SensorError, StoreWriteFailure
from ..models import SampleBatch, SampleTimestamp
from ..storage.timeseries import TimeSeriesStore
from ..system.sensors import SensorAdapter

LOGGER = logging.getLogger(__name__)

BatchListener = Callable[[int, SampleBatch], None]


@dataclass
class SchedulerStats:
    """Counters exposed to whatever observes the agent."""

    ticks: int = 0
    failed_ticks: int = 0
    partial_batches: int = 0
    store_retries: int = 0
    dropped_batches: int = 0
    last_tick_duration: float = 0.0


@dataclass
class TickResult:
    """Outcome of a single tick."""

    started_at: float
    batch_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class SamplingScheduler:
    """Drives collect-then-append ticks on a dedicated thread.

    At most one tick is ever in flight. The next tick is due ``interval``
    seconds (plus up to ``jitter_bound`` seconds of random delay) after the
    previous tick started; a tick that overran its interval is followed
    immediately by the next one instead of by a burst of missed ticks.
    """

    def __init__(
        self,
        adapter: SensorAdapter,
        store: TimeSeriesStore,
        *,
        clock: Optional[SystemClock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._adapter = adapter
        self._store = store
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._interval = 1.0
        self._jitter = 0.0
        self._stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_stamp: Optional[SampleTimestamp] = None
        self._listeners: List[BatchListener] = []

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def jitter_bound(self) -> float:
        return self._jitter

    def configure(self, interval: float, jitter_bound: float = 0.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if jitter_bound < 0 or jitter_bound >= interval:
            raise ValueError("jitter_bound must be in [0, interval)")
        self._interval = float(interval)
        self._jitter = float(jitter_bound)

    def add_listener(self, listener: BatchListener) -> None:
        """Register a callback invoked with (batch id, batch) after each stored batch."""
        self._listeners.append(listener)

    def stats(self) -> SchedulerStats:
        with self._stats_lock:
            return replace(self._stats)

    def start(self, interval: float, jitter_bound: float = 0.0) -> None:
        """Begin ticking on a background thread."""
        if self.running:
            LOGGER.warning("Sampling scheduler is already running")
            return
        self.configure(interval, jitter_bound)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="hostwatch-sampler", daemon=True)
        self._thread.start()
        LOGGER.info("Sampling every %.3fs (jitter up to %.3fs)", self._interval, self._jitter)

    def stop(self) -> None:
        """Request shutdown and wait for the in-flight tick. Safe to call twice."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None
        LOGGER.info("Sampling scheduler stopped after %d ticks", self.stats().ticks)

    def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick until stopped, or until ``max_ticks`` ticks have run."""
        ticks = 0
        while not self._stop_event.is_set():
            tick_start = self._clock.monotonic()
            self.run_once()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            delay = self.next_wake(tick_start) - self._clock.monotonic()
            if self._clock.wait(self._stop_event, max(0.0, delay)):
                break

    def next_wake(self, tick_start: float) -> float:
        """Monotonic time at which the tick after one started at ``tick_start`` is due."""
        jitter = self._rng.uniform(0.0, self._jitter) if self._jitter else 0.0
        return tick_start + self._interval + jitter

    def run_once(self) -> TickResult:
        """Collect one batch and store it. Never raises for sensor or store errors."""
        started = self._clock.monotonic()
        result = TickResult(started_at=started)
        try:
            batch = self._adapter.collect(self._next_timestamp())
        except SensorError as exc:
            LOGGER.warning("Tick aborted by sensor error: %s", exc)
            result.error = f"{type(exc).__name__}: {exc}"
        except Exception as exc:  # noqa: BLE001 - the loop must outlive a faulty sensor
            LOGGER.exception("Tick aborted by unexpected sensor failure")
            result.error = f"{type(exc).__name__}: {exc}"
        else:
            result.batch_id, result.error = self._store_batch(batch)

        duration = self._clock.monotonic() - started
        with self._stats_lock:
            self._stats.ticks += 1
            self._stats.last_tick_duration = duration
            if result.error is not None:
                self._stats.failed_ticks += 1
        if duration > self._interval:
            LOGGER.warning("Tick took %.3fs, longer than the %.3fs interval", duration, self._interval)
        return result

    def _store_batch(self, batch: SampleBatch) -> Tuple[Optional[int], Optional[str]]:
        if batch.is_partial:
            with self._stats_lock:
                self._stats.partial_batches += 1
        try:
            batch_id = self._store.append(batch)
        except StoreWriteFailure as exc:
            LOGGER.warning("Append failed, retrying once: %s", exc)
            with self._stats_lock:
                self._stats.store_retries += 1
            try:
                batch_id = self._store.append(batch)
            except StoreWriteFailure as retry_exc:
                LOGGER.error("Dropping batch of %d samples: %s", len(batch), retry_exc)
                with self._stats_lock:
                    self._stats.dropped_batches += 1
                return None, f"StoreWriteFailure: {retry_exc}"

        if batch_id is not None:
            for listener in list(self._listeners):
                try:
                    listener(batch_id, batch)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Batch listener %r failed", listener)
        return batch_id, None

    def _next_timestamp(self) -> SampleTimestamp:
        stamp = self._clock.now()
        last = self._last_stamp
        if last is not None:
            wall = stamp.wall if stamp.wall > last.wall else math.nextafter(last.wall, math.inf)
            monotonic = stamp.monotonic if stamp.monotonic > last.monotonic else math.nextafter(last.monotonic, math.inf)
            stamp = SampleTimestamp(wall=wall, monotonic=monotonic)
        self._last_stamp = stamp
        return stamp
