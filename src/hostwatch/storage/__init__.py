"""Local persistence for metric samples."""

from .retention import RetentionWorker
from .schema import SCHEMA_VERSION
from .timeseries import SampleQuery, TimeSeriesStore

__all__ = [
    "RetentionWorker",
    "SCHEMA_VERSION",
    "SampleQuery",
    "TimeSeriesStore",
]
