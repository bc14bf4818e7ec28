"""Hardware sensor adapter built on psutil.

Counter semantics: every byte counter (disk read/write, network rx/tx) is
cumulative since boot, using psutil's wrap-corrected counters, so consumers
compute rates from deltas between consecutive samples. Memory, disk capacity
and process count are gauges. CPU load is a percentage in ``[0.0, 100.0]``
measured since the previous collection. The per-process kinds report the
busiest processes, one sample each, with ``name[pid]`` as the source; process
CPU is a percentage of one core and may exceed 100 on multi-core hosts.
"""
from __future__ import annotations

import logging
import platform
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Tuple, Union

import psutil

from ..clock import SystemClock
from ..config import SamplingConfig
from ..errors import SensorError, SensorPartialFailure, SensorTimeout
from ..models import MetricKind, MetricSample, Number, SampleBatch, SampleTimestamp

LOGGER = logging.getLogger(__name__)

Reading = Tuple[Number, Optional[str]]
Reader = Callable[[], Union[Reading, List[Reading]]]


class SensorAdapter:
    """Produces one :class:`SampleBatch` per call from the host's counters."""

    def __init__(
        self,
        config: SamplingConfig,
        *,
        readers: Optional[Dict[MetricKind, Reader]] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._timeout = config.collect_timeout
        self._kinds: List[MetricKind] = list(dict.fromkeys(config.enabled_kinds))
        self._readers: Dict[MetricKind, Reader] = dict(self._default_readers())
        if readers:
            self._readers.update(readers)
        missing = [kind for kind in self._kinds if kind not in self._readers]
        if missing:
            raise ValueError(f"No reader registered for {', '.join(k.name for k in missing)}")

        self._pool = ThreadPoolExecutor(
            max_workers=max(1, len(self._kinds)), thread_name_prefix="hostwatch-sensor"
        )
        self._inflight: Dict[MetricKind, Future] = {}
        self._process_lock = threading.Lock()

        if readers is None:
            # First cpu_percent(None) call only sets the baseline.
            if MetricKind.CPU_LOAD in self._kinds:
                psutil.cpu_percent(interval=None)
            if MetricKind.PROCESS_CPU in self._kinds:
                self._read_top_processes("cpu_percent")

    @property
    def kinds(self) -> List[MetricKind]:
        return list(self._kinds)

    @property
    def timeout(self) -> float:
        return self._timeout

    def collect(self, timestamp: Optional[SampleTimestamp] = None) -> SampleBatch:
        """Read every enabled kind, waiting at most the configured timeout.

        Kinds that fail or do not answer in time are left out of the batch and
        listed in ``batch.failures``. Raises :class:`SensorTimeout` when nothing
        could be read because the host stalled, and
        :class:`SensorPartialFailure` when every kind errored.
        """
        stamp = timestamp or self._clock.now()
        failures: Dict[MetricKind, str] = {}
        futures: Dict[MetricKind, Future] = {}

        for kind in self._kinds:
            previous = self._inflight.get(kind)
            if previous is not None and not previous.done():
                failures[kind] = "previous read still pending"
                continue
            future = self._pool.submit(self._readers[kind])
            self._inflight[kind] = future
            futures[kind] = future

        done, _ = wait(list(futures.values()), timeout=self._timeout)

        samples: List[MetricSample] = []
        timed_out = any(reason == "previous read still pending" for reason in failures.values())
        for kind, future in futures.items():
            if future not in done:
                future.cancel()
                failures[kind] = f"timed out after {self._timeout:.3f}s"
                timed_out = True
                continue
            try:
                result = future.result()
                readings = result if isinstance(result, list) else [result]
                read = [
                    MetricSample(timestamp=stamp, kind=kind, value=kind.coerce(value), source=source)
                    for value, source in readings
                ]
            except Exception as exc:  # noqa: BLE001 - any host error only costs this kind
                failures[kind] = f"{type(exc).__name__}: {exc}"
                continue
            samples.extend(read)

        if failures:
            LOGGER.warning("Sensor read failed for %s", {k.name: v for k, v in failures.items()})
        if not samples and self._kinds:
            if timed_out:
                raise SensorTimeout(f"No metric could be read within {self._timeout:.3f}s")
            raise SensorPartialFailure("Every metric read failed", failures)

        return SampleBatch(samples=samples, failures=failures)

    def describe_host(self) -> Dict[str, object]:
        """Return static information about the machine."""
        return {
            "hostname": socket.gethostname(),
            "os": platform.platform(),
            "cpu_model": platform.processor() or platform.machine(),
            "physical_cores": psutil.cpu_count(logical=False),
            "logical_cores": psutil.cpu_count(logical=True),
            "boot_time": psutil.boot_time(),
        }

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        LOGGER.debug("Sensor pool shut down")

    def _default_readers(self) -> Dict[MetricKind, Reader]:
        return {
            MetricKind.CPU_LOAD: self._read_cpu_load,
            MetricKind.MEM_USED: self._read_mem_used,
            MetricKind.MEM_TOTAL: self._read_mem_total,
            MetricKind.DISK_READ_BYTES: lambda: self._read_disk_io("read_bytes"),
            MetricKind.DISK_WRITE_BYTES: lambda: self._read_disk_io("write_bytes"),
            MetricKind.NET_RX_BYTES: lambda: self._read_net_io("bytes_recv"),
            MetricKind.NET_TX_BYTES: lambda: self._read_net_io("bytes_sent"),
            MetricKind.DISK_USED: lambda: self._read_disk_usage("used"),
            MetricKind.DISK_TOTAL: lambda: self._read_disk_usage("total"),
            MetricKind.PROCESS_COUNT: self._read_process_count,
            MetricKind.PROCESS_CPU: lambda: self._read_top_processes("cpu_percent"),
            MetricKind.PROCESS_RSS: lambda: self._read_top_processes("memory_info"),
        }

    @staticmethod
    def _read_cpu_load() -> Reading:
        return psutil.cpu_percent(interval=None), None

    @staticmethod
    def _read_mem_used() -> Reading:
        memory = psutil.virtual_memory()
        return memory.total - memory.available, None

    @staticmethod
    def _read_mem_total() -> Reading:
        return psutil.virtual_memory().total, None

    def _read_disk_io(self, field: str) -> Reading:
        device = self._config.disk_device
        if device:
            counters = psutil.disk_io_counters(perdisk=True) or {}
            if device not in counters:
                raise SensorError(f"Disk device {device!r} not found")
            return getattr(counters[device], field), device
        totals = psutil.disk_io_counters()
        if totals is None:
            raise SensorError("Disk I/O counters unavailable on this host")
        return getattr(totals, field), None

    def _read_net_io(self, field: str) -> Reading:
        interface = self._config.network_interface
        if interface:
            counters = psutil.net_io_counters(pernic=True)
            if interface not in counters:
                raise SensorError(f"Network interface {interface!r} not found")
            return getattr(counters[interface], field), interface
        return getattr(psutil.net_io_counters(), field), None

    def _read_disk_usage(self, field: str) -> Reading:
        path = self._config.disk_usage_path
        return getattr(psutil.disk_usage(path), field), path

    @staticmethod
    def _read_process_count() -> Reading:
        return len(psutil.pids()), None

    def _read_top_processes(self, attr: str) -> List[Reading]:
        """The ``top_process_count`` largest processes by ``attr``.

        Processes that vanish or deny access during the scan are skipped.
        """
        with self._process_lock:
            snapshot = [proc.info for proc in psutil.process_iter(["pid", "name", attr])]
        readings: List[Reading] = []
        for info in snapshot:
            value = info.get(attr)
            if value is None:
                continue
            if attr == "memory_info":
                value = value.rss
            readings.append((value, f"{info.get('name') or '?'}[{info['pid']}]"))
        readings.sort(key=lambda reading: reading[0], reverse=True)
        return readings[: self._config.top_process_count]
