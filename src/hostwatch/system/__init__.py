"""Host sensor access."""
from .sensors import SensorAdapter

__all__ = ["SensorAdapter"]
