"""
Configuration management for the mirror server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The fan-out batch size never exceeds the store's mutation ceiling
    - Secrets are never logged

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Extend ServerConfig.validate() for every new cross-section constraint
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        data_dir: Directory for SQLite database files
        wal_mode: Enable SQLite WAL mode
        busy_timeout_ms: SQLite busy timeout
        max_batch_mutations: Hard ceiling on mutations per write batch
    """

    data_dir: str = "/var/lib/mirror-server"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    max_batch_mutations: int = 500

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/mirror-server"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            max_batch_mutations=int(os.getenv("STORE_MAX_BATCH_MUTATIONS", "500")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Mirror sync engine configuration.

    Attributes:
        batch_size: Mutations per fan-out commit
        structural_fields: Grouping fields cleared on mirror copies
        system_actor: Actor recorded on background fan-out writes
    """

    batch_size: int = 450
    structural_fields: tuple[str, ...] = ("bacenta_id",)
    system_actor: str = "system:mirror-sync"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("SYNC_BATCH_SIZE", "450")),
            structural_fields=_env_list("SYNC_STRUCTURAL_FIELDS", "bacenta_id"),
            system_actor=os.getenv("SYNC_SYSTEM_ACTOR", "system:mirror-sync"),
        )


@dataclass(frozen=True)
class OutboxConfig:
    """Propagation outbox configuration.

    Attributes:
        enabled: Run canonical-side propagation through the outbox worker
        max_pending: Queue bound; enqueue waits when full
    """

    enabled: bool = True
    max_pending: int = 10000

    @classmethod
    def from_env(cls) -> OutboxConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("OUTBOX_ENABLED", "true"),
            max_pending=int(os.getenv("OUTBOX_MAX_PENDING", "10000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP caller API configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=_env_list("HTTP_CORS_ORIGINS", "http://localhost:3000"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        store_backend: Which document store to use
        storage: Store configuration
        sync: Sync engine configuration
        outbox: Propagation outbox configuration
        http: HTTP API configuration
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.SQLITE
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        config = cls(
            store_backend=store_backend,
            storage=StorageConfig.from_env(),
            sync=SyncConfig.from_env(),
            outbox=OutboxConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.sync.batch_size < 1:
            raise ValueError("SYNC_BATCH_SIZE must be at least 1")
        if self.sync.batch_size > self.storage.max_batch_mutations:
            raise ValueError(
                f"SYNC_BATCH_SIZE ({self.sync.batch_size}) exceeds "
                f"STORE_MAX_BATCH_MUTATIONS ({self.storage.max_batch_mutations})"
            )
        if self.outbox.max_pending < 0:
            raise ValueError("OUTBOX_MAX_PENDING must not be negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if self.store_backend == StoreBackend.SQLITE and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log effective configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "data_dir": self.storage.data_dir
                if self.store_backend == StoreBackend.SQLITE
                else None,
                "sync_batch_size": self.sync.batch_size,
                "outbox_enabled": self.outbox.enabled,
                "http_port": self.http.port,
                "log_level": self.observability.log_level,
            },
        )
