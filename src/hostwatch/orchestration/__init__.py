"""Orchestration of the sampling loop."""
from .sampling_scheduler import SamplingScheduler, SchedulerStats, TickResult

__all__ = ["SamplingScheduler", "SchedulerStats", "TickResult"]
