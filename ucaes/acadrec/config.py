"""
Configuration management for AcadRec.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Retry bounds are always finite and positive
    - Progression policy always has min_level <= max_level

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable, operators script against them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_name: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/acadrec"
    db_name: str = "acadrec.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("ACADREC_DATA_DIR", "/var/lib/acadrec"),
            db_name=os.getenv("ACADREC_DB_NAME", "acadrec.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class AllocatorConfig:
    """Identifier allocator configuration.

    Attributes:
        prefix: Prepended to every identifier (period keys usually carry
            the institution code already, so this is empty by default)
        max_retries: Compare-and-set attempts before giving up on the counter
        retry_delay_ms: Base backoff delay, doubled after each lost race
        fallback_enabled: Return a timestamp-derived identifier on exhausted
            contention instead of raising CounterContentionError
    """

    prefix: str = ""
    max_retries: int = 10
    retry_delay_ms: int = 5
    fallback_enabled: bool = True

    @classmethod
    def from_env(cls) -> AllocatorConfig:
        """Load configuration from environment variables."""
        return cls(
            prefix=os.getenv("ALLOCATOR_PREFIX", ""),
            max_retries=int(os.getenv("ALLOCATOR_MAX_RETRIES", "10")),
            retry_delay_ms=int(os.getenv("ALLOCATOR_RETRY_DELAY_MS", "5")),
            fallback_enabled=_env_bool("ALLOCATOR_FALLBACK_ENABLED", "true"),
        )


@dataclass(frozen=True)
class WorkflowConfig:
    """Grade workflow and synchronizer write configuration.

    Attributes:
        max_cas_retries: Compare-and-set attempts per document write
    """

    max_cas_retries: int = 5

    @classmethod
    def from_env(cls) -> WorkflowConfig:
        """Load configuration from environment variables."""
        return cls(max_cas_retries=int(os.getenv("WORKFLOW_MAX_CAS_RETRIES", "5")))


@dataclass(frozen=True)
class ProgressionConfig:
    """Level progression policy defaults.

    Attributes:
        increment: Levels added per progression (100 -> 200)
        min_level: Entry level, assumed when a record has none
        max_level: Final level of a programme
    """

    increment: int = 100
    min_level: int = 100
    max_level: int = 400

    @classmethod
    def from_env(cls) -> ProgressionConfig:
        """Load configuration from environment variables."""
        return cls(
            increment=int(os.getenv("PROGRESSION_INCREMENT", "100")),
            min_level=int(os.getenv("PROGRESSION_MIN_LEVEL", "100")),
            max_level=int(os.getenv("PROGRESSION_MAX_LEVEL", "400")),
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
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        storage: Document store configuration
        allocator: Identifier allocator configuration
        workflow: Workflow write configuration
        progression: Progression policy defaults
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    progression: ProgressionConfig = field(default_factory=ProgressionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            allocator=AllocatorConfig.from_env(),
            workflow=WorkflowConfig.from_env(),
            progression=ProgressionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.allocator.max_retries < 1:
            raise ValueError("ALLOCATOR_MAX_RETRIES must be at least 1")
        if self.allocator.retry_delay_ms < 0:
            raise ValueError("ALLOCATOR_RETRY_DELAY_MS must not be negative")
        if self.workflow.max_cas_retries < 1:
            raise ValueError("WORKFLOW_MAX_CAS_RETRIES must be at least 1")
        if self.progression.increment < 1:
            raise ValueError("PROGRESSION_INCREMENT must be positive")
        if self.progression.min_level > self.progression.max_level:
            raise ValueError("PROGRESSION_MIN_LEVEL must not exceed PROGRESSION_MAX_LEVEL")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_name": self.storage.db_name,
                "allocator_prefix": self.allocator.prefix,
                "allocator_max_retries": self.allocator.max_retries,
                "allocator_fallback": self.allocator.fallback_enabled,
                "workflow_max_cas_retries": self.workflow.max_cas_retries,
                "max_level": self.progression.max_level,
                "log_level": self.observability.log_level,
            },
        )
