"""
Configuration management for relgraph.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Configuration objects are immutable once loaded
    - Query deadlines and depth ceilings are always positive

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported tuple store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class EngineConfig:
    """Evaluator configuration.

    Attributes:
        max_depth: Recursion ceiling for one query; deeper walks raise DepthExceeded
        deadline_ms: Default per-query deadline in milliseconds
    """

    max_depth: int = 25
    deadline_ms: int = 2000

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            max_depth=int(os.getenv("RELGRAPH_MAX_DEPTH", "25")),
            deadline_ms=int(os.getenv("RELGRAPH_DEADLINE_MS", "2000")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Query cache configuration.

    Attributes:
        enabled: Whether sub-query results are memoised across queries
        max_entries: LRU bound on memoised results
    """

    enabled: bool = True
    max_entries: int = 10000

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("RELGRAPH_CACHE_ENABLED", "true").lower() == "true",
            max_entries=int(os.getenv("RELGRAPH_CACHE_MAX_ENTRIES", "10000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """SQLite tuple store configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/relgraph"
    db_name: str = "tuples.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_name)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("RELGRAPH_DATA_DIR", "/var/lib/relgraph"),
            db_name=os.getenv("RELGRAPH_DB_NAME", "tuples.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
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
class RelgraphConfig:
    """Complete relgraph configuration.

    Attributes:
        store_backend: Which tuple store backend to use
        engine: Evaluator configuration
        cache: Query cache configuration
        storage: SQLite configuration (if store_backend is SQLITE)
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.MEMORY
    engine: EngineConfig = field(default_factory=EngineConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> RelgraphConfig:
        """Load complete configuration from environment variables.

        Returns:
            RelgraphConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("RELGRAPH_STORE_BACKEND", "memory").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid RELGRAPH_STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )

        config = cls(
            store_backend=store_backend,
            engine=EngineConfig.from_env(),
            cache=CacheConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.engine.max_depth <= 0:
            raise ValueError("RELGRAPH_MAX_DEPTH must be positive")
        if self.engine.deadline_ms <= 0:
            raise ValueError("RELGRAPH_DEADLINE_MS must be positive")
        if self.cache.enabled and self.cache.max_entries <= 0:
            raise ValueError("RELGRAPH_CACHE_MAX_ENTRIES must be positive when the cache is enabled")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if self.store_backend == StoreBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "relgraph configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "db_path": self.storage.db_path
                if self.store_backend == StoreBackend.SQLITE
                else None,
                "max_depth": self.engine.max_depth,
                "deadline_ms": self.engine.deadline_ms,
                "cache_enabled": self.cache.enabled,
                "cache_max_entries": self.cache.max_entries,
                "log_level": self.observability.log_level,
            },
        )
