"""Configuration utilities for the telemetry agent."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .models import MetricKind, RetentionPolicy


class SamplingConfig(BaseModel):
    """Settings for the sampling scheduler and the sensor adapter."""

    interval_seconds: float = Field(
        5.0, gt=0.0, description="Time between the starts of two consecutive ticks."
    )
    jitter_seconds: float = Field(
        0.0,
        ge=0.0,
        description="Upper bound of the random delay added to every wake time.",
    )
    collect_timeout_seconds: Optional[float] = Field(
        None,
        gt=0.0,
        description="Per-tick collection timeout. Defaults to the sampling interval.",
    )
    enabled_kinds: List[MetricKind] = Field(
        default_factory=lambda: list(MetricKind),
        description="Metric kinds sampled on every tick.",
    )
    network_interface: Optional[str] = Field(
        None, description="Restrict network counters to a single interface."
    )
    disk_device: Optional[str] = Field(
        None, description="Restrict disk I/O counters to a single block device."
    )
    disk_usage_path: str = Field(
        "/", description="Mount point used for the disk capacity metrics."
    )
    top_process_count: int = Field(
        10, ge=1, description="How many of the busiest processes the per-process metrics report."
    )

    @model_validator(mode="after")
    def _check_jitter(self) -> "SamplingConfig":
        if self.jitter_seconds >= self.interval_seconds:
            raise ValueError("jitter_seconds must be smaller than interval_seconds")
        return self

    @property
    def collect_timeout(self) -> float:
        return self.collect_timeout_seconds or self.interval_seconds


class StoreConfig(BaseModel):
    """Settings for the embedded time-series store."""

    db_filename: str = Field("metrics.db", description="Database file inside the data directory.")
    write_timeout_seconds: float = Field(
        5.0,
        gt=0.0,
        description="Longest an append may wait for the write lock before it fails.",
    )
    encrypt_samples: bool = Field(
        False, description="Seal sample values through the vault before writing them."
    )
    query_fetch_size: int = Field(
        500, ge=1, description="Rows pulled from SQLite per round trip while streaming queries."
    )


class RetentionConfig(BaseModel):
    """Retention bounds and the cadence of the eviction pass."""

    max_age_seconds: Optional[float] = Field(
        7 * 24 * 3600.0, ge=0.0, description="Drop batches older than this."
    )
    max_samples: Optional[int] = Field(None, ge=0, description="Cap on stored samples.")
    max_bytes: Optional[int] = Field(None, ge=0, description="Cap on estimated stored bytes.")
    interval_seconds: float = Field(
        60.0, gt=0.0, description="Delay between two retention passes."
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetentionConfig":
        if self.max_age_seconds is None and self.max_samples is None and self.max_bytes is None:
            raise ValueError("At least one retention bound must be set")
        return self

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            max_age_seconds=self.max_age_seconds,
            max_samples=self.max_samples,
            max_bytes=self.max_bytes,
        )


class VaultConfig(BaseModel):
    """Settings for the secret vault."""

    scheme_preference: Literal["auto", "native", "fallback"] = Field(
        "auto",
        description=(
            "Which protection scheme new secrets use. 'auto' picks the platform "
            "primitive when present and the machine-bound fallback otherwise."
        ),
    )
    directory_name: str = Field("vault", description="Vault directory inside the data directory.")
    kdf_iterations: int = Field(
        390_000,
        ge=1_000,
        description="PBKDF2 iterations used to derive the fallback key.",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Root logging level.")
    log_dir: Path = Field(Path("logs"), description="Directory for log files.")


class AgentConfig(BaseModel):
    """Top-level configuration object."""

    data_dir: Path = Field(Path("storage"), description="Root directory for persisted state.")
    sampling: SamplingConfig = SamplingConfig()
    storage: StoreConfig = StoreConfig()
    retention: RetentionConfig = RetentionConfig()
    vault: VaultConfig = VaultConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.storage.db_filename

    @property
    def vault_dir(self) -> Path:
        return self.data_dir / self.vault.directory_name


def load_config(path: Optional[os.PathLike[str]] = None) -> AgentConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to a configuration file. If not provided, the default
            configuration bundled with the project is used.

    Returns:
        AgentConfig: Parsed configuration model.
    """

    project_root = Path(__file__).resolve().parents[2]
    default_path = project_root / "config" / "default.yaml"
    config_path = Path(path) if path else default_path

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        data: Dict[str, Any] = yaml.safe_load(handle) or {}

    overrides_path = config_path.parent / "overrides.yaml"
    if overrides_path.exists():
        with overrides_path.open("r", encoding="utf-8") as handle:
            overrides: Dict[str, Any] = yaml.safe_load(handle) or {}
        data = _deep_update(data, overrides)

    return AgentConfig(**data)


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge update mapping into base mapping."""

    merged = dict(base)
    for key, value in updates.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = value
    return merged
