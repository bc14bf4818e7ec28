"""Explicit wiring of the agent's long-lived components."""
from __future__ import annotations

import logging
from typing import Optional

from .clock import SystemClock
from .config import AgentConfig
from .orchestration.sampling_scheduler import SamplingScheduler
from .query.facade import MetricsQueryService
from .security.vault import SecureVault
from .storage.retention import RetentionWorker
from .storage.timeseries import TimeSeriesStore
from .system.sensors import SensorAdapter

LOGGER = logging.getLogger(__name__)


class AgentContext:
    """Holds the vault, store, sensors and background workers of one agent.

    Built once at startup and handed to whoever needs a component; there is no
    process-wide instance.
    """

    def __init__(
        self,
        config: AgentConfig,
        vault: SecureVault,
        store: TimeSeriesStore,
        adapter: SensorAdapter,
        *,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.config = config
        self.vault = vault
        self.store = store
        self.adapter = adapter
        self.scheduler = SamplingScheduler(adapter, store, clock=clock)
        self.retention = RetentionWorker(
            store, config.retention.policy(), config.retention.interval_seconds
        )
        self.queries = MetricsQueryService(store)
        self._started = False

    @classmethod
    def from_config(cls, config: AgentConfig) -> "AgentContext":
        """Open the vault and the store and build the sensor adapter.

        Raises:
            StoreCorruption: the metrics database cannot be used.
            VaultUnavailable: the configured protection scheme is missing.
        """
        config.data_dir.mkdir(parents=True, exist_ok=True)
        vault = SecureVault(config.vault_dir, config.vault)
        store = TimeSeriesStore(
            config.db_path,
            config.storage,
            vault=vault if config.storage.encrypt_samples else None,
        )
        try:
            adapter = SensorAdapter(config.sampling)
        except Exception:
            store.close()
            raise
        return cls(config, vault, store, adapter)

    def start(self) -> None:
        if self._started:
            return
        sampling = self.config.sampling
        self.retention.start()
        self.scheduler.start(sampling.interval_seconds, sampling.jitter_seconds)
        self._started = True
        LOGGER.info("Agent started with data directory %s", self.config.data_dir)

    def stop(self) -> None:
        """Stop background work, then release the sensors and the store."""
        self.scheduler.stop()
        self.retention.stop()
        self.adapter.close()
        self.store.close()
        self._started = False

    def __enter__(self) -> "AgentContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
