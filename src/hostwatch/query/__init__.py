"""Query facade."""
from .facade import MetricSummary, MetricsQueryService

__all__ = ["MetricSummary", "MetricsQueryService"]
