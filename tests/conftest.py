"""Shared fixtures for the hostwatch test-suite."""
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT / "src") not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT / "src"))

from hostwatch.config import StoreConfig, VaultConfig  # noqa: E402
from hostwatch.models import MetricKind, MetricSample, SampleBatch, SampleTimestamp  # noqa: E402
from hostwatch.security.vault import SecureVault  # noqa: E402
from hostwatch.storage.timeseries import TimeSeriesStore  # noqa: E402

BASE_WALL = 1_700_000_000.0


class FakeClock:
    """Deterministic clock whose waits advance time instead of sleeping."""

    def __init__(self, wall_offset: float = BASE_WALL) -> None:
        self._monotonic = 0.0
        self._wall_offset = wall_offset
        self.waits: List[float] = []

    def monotonic(self) -> float:
        return self._monotonic

    def time(self) -> float:
        return self._wall_offset + self._monotonic

    def now(self) -> SampleTimestamp:
        return SampleTimestamp(wall=self.time(), monotonic=self.monotonic())

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds

    def shift_wall(self, seconds: float) -> None:
        self._wall_offset += seconds

    def wait(self, event: threading.Event, timeout: float) -> bool:
        self.waits.append(timeout)
        self.advance(timeout)
        return event.is_set()


def make_batch(wall: float, kinds=(MetricKind.CPU_LOAD,), value: float = 1.0) -> SampleBatch:
    stamp = SampleTimestamp(wall=wall, monotonic=wall - BASE_WALL)
    return SampleBatch(
        samples=[MetricSample(timestamp=stamp, kind=kind, value=kind.coerce(value)) for kind in kinds]
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path):
    metrics = TimeSeriesStore(tmp_path / "metrics.db", StoreConfig(write_timeout_seconds=1.0))
    yield metrics
    metrics.close()


@pytest.fixture()
def vault(tmp_path: Path) -> SecureVault:
    return SecureVault(
        tmp_path / "vault", VaultConfig(scheme_preference="fallback", kdf_iterations=1_000)
    )


@pytest.fixture()
def batch_factory():
    return make_batch
