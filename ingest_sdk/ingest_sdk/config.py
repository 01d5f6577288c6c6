"""
Configuration for the ingestion pipeline.

Values come from, lowest to highest precedence: dataclass defaults,
ingest.yaml (or .json), INGEST_* environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ingest_sdk.errors import ConfigError


_BUFFER_ENV = {
    "max_batch_size": "INGEST_MAX_BATCH_SIZE",
    "flush_interval_ms": "INGEST_FLUSH_INTERVAL_MS",
    "backpressure_threshold": "INGEST_BACKPRESSURE_THRESHOLD",
    "max_concurrent_flushes": "INGEST_MAX_CONCURRENT_FLUSHES",
}


@dataclass(frozen=True)
class BufferConfig:
    """Configuration for BufferManager. Fixed for the buffer's lifetime."""
    max_batch_size: int = 2000  # Max events per flush; also the size trigger
    flush_interval_ms: int = 200  # Quiet period before the time trigger fires
    backpressure_threshold: int = 10000  # Queue length at which admission stops
    max_concurrent_flushes: int = 3  # Max simultaneous writes to storage

    def __post_init__(self):
        for name in _BUFFER_ENV:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    @property
    def flush_interval_sec(self) -> float:
        return self.flush_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BufferConfig":
        known = {k: v for k, v in data.items() if k in _BUFFER_ENV}
        return cls(**known)

    @classmethod
    def from_env(cls, base: Optional["BufferConfig"] = None) -> "BufferConfig":
        """Create config from environment variables, falling back to base."""
        base = base or cls()
        values = {}
        for name, env_name in _BUFFER_ENV.items():
            raw = os.environ.get(env_name)
            if raw is None:
                values[name] = getattr(base, name)
                continue
            try:
                values[name] = int(raw)
            except ValueError:
                raise ConfigError(f"{env_name} must be an integer, got {raw!r}")
        return cls(**values)


@dataclass(frozen=True)
class StorageConfig:
    """Storage backend selection."""
    type: str = "memory"  # memory | postgres
    dsn: Optional[str] = None
    read_pool_size: int = 2  # Extra pooled connections for the read path

    def __post_init__(self):
        if self.type not in ("memory", "postgres"):
            raise ConfigError(f"Unknown storage type: {self.type!r}")
        if self.type == "postgres" and not self.dsn:
            raise ConfigError("storage.dsn is required for postgres storage")


@dataclass(frozen=True)
class IngestConfig:
    """Top-level configuration."""
    buffer: BufferConfig = field(default_factory=BufferConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"
    retry_after_seconds: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestConfig":
        buffer = BufferConfig.from_env(BufferConfig.from_dict(data.get("buffer") or {}))

        storage_data = dict(data.get("storage") or {})
        # A database URL in the environment outranks the file's storage type;
        # only an explicit INGEST_STORAGE_TYPE outranks the URL.
        if os.environ.get("INGEST_DATABASE_URL"):
            storage_data["dsn"] = os.environ["INGEST_DATABASE_URL"]
            storage_data["type"] = "postgres"
        if os.environ.get("INGEST_STORAGE_TYPE"):
            storage_data["type"] = os.environ["INGEST_STORAGE_TYPE"]
        storage = StorageConfig(
            type=storage_data.get("type", "memory"),
            dsn=storage_data.get("dsn"),
            read_pool_size=int(storage_data.get("read_pool_size", 2)),
        )

        return cls(
            buffer=buffer,
            storage=storage,
            log_level=os.environ.get("INGEST_LOG_LEVEL", data.get("log_level", "INFO")).upper(),
            retry_after_seconds=int(data.get("retry_after_seconds", 1)),
        )


def load_config(config_path: Optional[str] = None) -> IngestConfig:
    """
    Load configuration from ingest.yaml.

    Search order:
    1. Provided config_path
    2. INGEST_CONFIG environment variable
    3. ./ingest.yaml in current directory
    4. ingest.yaml in parent directories (walk up the tree)

    If nothing is found, defaults plus environment overrides are used.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        IngestConfig instance

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ConfigError: If a value is invalid
    """
    if config_path:
        return _load_from_path(config_path)

    env_path = os.environ.get("INGEST_CONFIG")
    if env_path:
        return _load_from_path(env_path)

    current = Path.cwd()
    while True:
        config_file = current / "ingest.yaml"
        if config_file.exists():
            return _load_from_path(str(config_file))

        # Stop at filesystem root
        if current == current.parent:
            break
        current = current.parent

    return IngestConfig.from_dict({})


def _load_from_path(path: str) -> IngestConfig:
    """Load config from a specific path."""
    with open(path, "r") as f:
        if path.endswith(".json"):
            config_dict = json.load(f)
        else:
            config_dict = yaml.safe_load(f) or {}
    if not isinstance(config_dict, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return IngestConfig.from_dict(config_dict)
