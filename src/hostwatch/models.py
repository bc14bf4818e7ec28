"""Core data model shared by the sensors, the store and the vault."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Union

Number = Union[int, float]


class MetricKind(Enum):
    """Metrics the agent knows how to sample."""

    CPU_LOAD = "cpu_load"
    MEM_USED = "mem_used"
    MEM_TOTAL = "mem_total"
    DISK_READ_BYTES = "disk_read_bytes"
    DISK_WRITE_BYTES = "disk_write_bytes"
    NET_RX_BYTES = "net_rx_bytes"
    NET_TX_BYTES = "net_tx_bytes"
    DISK_USED = "disk_used"
    DISK_TOTAL = "disk_total"
    PROCESS_COUNT = "process_count"
    PROCESS_CPU = "process_cpu"
    PROCESS_RSS = "process_rss"

    @property
    def is_integer(self) -> bool:
        return self not in (MetricKind.CPU_LOAD, MetricKind.PROCESS_CPU)

    @property
    def is_cumulative(self) -> bool:
        """Whether the kind is a counter that only grows between reboots."""
        return self in _CUMULATIVE_KINDS

    def coerce(self, value: Number) -> Number:
        """Convert ``value`` to this kind's type; host CPU load is clamped to [0, 100]."""
        if self is MetricKind.CPU_LOAD:
            return min(100.0, max(0.0, float(value)))
        return int(value) if self.is_integer else float(value)


_CUMULATIVE_KINDS = frozenset(
    {
        MetricKind.DISK_READ_BYTES,
        MetricKind.DISK_WRITE_BYTES,
        MetricKind.NET_RX_BYTES,
        MetricKind.NET_TX_BYTES,
    }
)


@dataclass(frozen=True, order=True)
class SampleTimestamp:
    """Wall-clock and monotonic readings taken at the same instant."""

    wall: float
    monotonic: float


@dataclass(frozen=True)
class MetricSample:
    """A single immutable metric reading."""

    timestamp: SampleTimestamp
    kind: MetricKind
    value: Number
    source: Optional[str] = None


@dataclass(frozen=True)
class StoredSample(MetricSample):
    """A sample read back from the store with its persisted ordering keys."""

    sequence: int = 0
    batch_id: int = 0


@dataclass
class SampleBatch:
    """Samples produced by one scheduler tick, written as one unit."""

    samples: List[MetricSample] = field(default_factory=list)
    failures: Dict[MetricKind, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        previous: Optional[SampleTimestamp] = None
        for sample in self.samples:
            if previous is not None and sample.timestamp.wall < previous.wall:
                raise ValueError("Sample timestamps must be non-decreasing within a batch")
            previous = sample.timestamp

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(self.samples)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)

    @property
    def kinds(self) -> Sequence[MetricKind]:
        return [sample.kind for sample in self.samples]


@dataclass(frozen=True)
class RetentionPolicy:
    """Bounds on how much history the store keeps.

    At least one bound must be set; the store enforces whichever is exceeded
    first.
    """

    max_age_seconds: Optional[float] = None
    max_samples: Optional[int] = None
    max_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_age_seconds is None and self.max_samples is None and self.max_bytes is None:
            raise ValueError("RetentionPolicy requires at least one finite bound")
        for name in ("max_age_seconds", "max_samples", "max_bytes"):
            bound = getattr(self, name)
            if bound is not None and bound < 0:
                raise ValueError(f"{name} must be non-negative")


@dataclass(frozen=True)
class SecretRecord:
    """Persisted, encrypted secret. Never holds plaintext."""

    name: str
    ciphertext: bytes
    scheme: str
    created_at: float
