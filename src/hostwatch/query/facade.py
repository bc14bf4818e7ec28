"""Read-only access to stored metrics for presentation layers."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from ..models import MetricKind, StoredSample
from ..storage.timeseries import SampleQuery, TimeSeriesStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSummary:
    """Aggregate view of one metric over a time range."""

    kind: MetricKind
    count: int
    minimum: Optional[float]
    maximum: Optional[float]
    mean: Optional[float]
    first: Optional[StoredSample]
    last: Optional[StoredSample]

    @property
    def delta(self) -> Optional[float]:
        """Growth of a cumulative counter across the range."""
        if self.first is None or self.last is None:
            return None
        return float(self.last.value) - float(self.first.value)


class MetricsQueryService:
    """Exposes stored samples without any way to modify them."""

    def __init__(self, store: TimeSeriesStore) -> None:
        self._store = store

    def list_metric_kinds(self) -> List[MetricKind]:
        return self._store.kinds()

    def query(
        self, kind: MetricKind, start: Optional[float] = None, end: Optional[float] = None
    ) -> SampleQuery:
        if start is not None and end is not None and start > end:
            raise ValueError("start must not be after end")
        return self._store.query([kind], start, end)

    def latest_sample(self, kind: MetricKind) -> Optional[StoredSample]:
        return self._store.latest(kind)

    def summary(
        self, kind: MetricKind, start: Optional[float] = None, end: Optional[float] = None
    ) -> MetricSummary:
        count = 0
        total = 0.0
        minimum = math.inf
        maximum = -math.inf
        first: Optional[StoredSample] = None
        last: Optional[StoredSample] = None
        for sample in self.query(kind, start, end):
            value = float(sample.value)
            count += 1
            total += value
            minimum = min(minimum, value)
            maximum = max(maximum, value)
            if first is None:
                first = sample
            last = sample
        LOGGER.debug("Summarised %d %s samples", count, kind.name)
        if not count:
            return MetricSummary(kind, 0, None, None, None, None, None)
        return MetricSummary(kind, count, minimum, maximum, total / count, first, last)
