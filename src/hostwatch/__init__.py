"""Host telemetry agent: sampling, local time-series storage and a secret vault."""

__version__ = "0.1.0"
