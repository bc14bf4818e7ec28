"""Exception taxonomy for the telemetry agent."""
from __future__ import annotations

from typing import Dict, Mapping, Optional


class HostwatchError(Exception):
    """Base class for all agent errors."""


class SensorError(HostwatchError):
    """Raised when the sensor adapter cannot produce a usable batch."""


class SensorTimeout(SensorError):
    """The host did not answer within the collection timeout."""


class SensorPartialFailure(SensorError):
    """None of the requested kinds could be read."""

    def __init__(self, message: str, failures: Optional[Mapping[object, str]] = None) -> None:
        super().__init__(message)
        self.failures: Dict[object, str] = dict(failures or {})


class StoreError(HostwatchError):
    """Base class for time-series store errors."""


class StoreWriteFailure(StoreError):
    """An append could not be committed."""


class StoreCorruption(StoreError):
    """The store file is unreadable or carries an unknown schema version."""


class VaultError(HostwatchError):
    """Base class for secret protection errors."""


class VaultUnavailable(VaultError):
    """The protection scheme a secret needs is not supported on this host."""


class CorruptCiphertext(VaultError):
    """Ciphertext failed its integrity check."""
