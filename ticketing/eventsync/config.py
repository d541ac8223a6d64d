"""
Configuration management for EventSync.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The memory backend needs no external service at all
    - Secrets (relayer API key, AWS credentials) are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep variable names aligned with the deployment manifests
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Which set of store adapters to build."""

    MEMORY = "memory"
    REMOTE = "remote"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger relayer configuration.

    Attributes:
        gateway_url: Base URL of the event-factory relayer
        chain_id: EVM chain id the factory is deployed on
        contract_address: Event factory contract address
        api_key: Bearer token for the relayer (optional)
        request_timeout_seconds: httpx timeout per request
        max_retries: Read retries on transient failures
    """

    gateway_url: str = "http://localhost:8545"
    chain_id: int = 43113  # Avalanche Fuji
    contract_address: str = "0x" + "0" * 40
    api_key: str | None = None
    request_timeout_seconds: float = 30.0
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables."""
        return cls(
            gateway_url=os.getenv("LEDGER_GATEWAY_URL", "http://localhost:8545"),
            chain_id=int(os.getenv("LEDGER_CHAIN_ID", "43113")),
            contract_address=os.getenv("LEDGER_CONTRACT_ADDRESS", "0x" + "0" * 40),
            api_key=os.getenv("LEDGER_API_KEY"),
            request_timeout_seconds=float(os.getenv("LEDGER_REQUEST_TIMEOUT_SECONDS", "30")),
            max_retries=int(os.getenv("LEDGER_MAX_RETRIES", "3")),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite event database configuration.

    Attributes:
        data_dir: Directory for the SQLite database file
        db_name: Database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/eventsync"
    db_name: str = "events.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/eventsync"),
            db_name=os.getenv("EVENTS_DB_NAME", "events.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ObjectStoreConfig:
    """S3 object store configuration.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO/LocalStack or Filebase)
        prefix: Key prefix for event objects
        public_base_url: Base URL objects are served from (defaults to s3:// URLs)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "eventsync-media"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "events"
    public_base_url: str = ""
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> ObjectStoreConfig:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "eventsync-media"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "events").strip("/"),
            public_base_url=os.getenv("S3_PUBLIC_BASE_URL", ""),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class CoordinatorConfig:
    """Multi-store coordination settings.

    Attributes:
        store_timeout_seconds: Upper bound on any single adapter call
        sync_concurrency: Events processed in parallel by a consistency sweep
    """

    store_timeout_seconds: float = 10.0
    sync_concurrency: int = 4

    @classmethod
    def from_env(cls) -> CoordinatorConfig:
        """Load configuration from environment variables."""
        return cls(
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "10")),
            sync_concurrency=int(os.getenv("SYNC_CONCURRENCY", "4")),
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
        store_backend: Which adapters to build
        ledger: Ledger relayer configuration
        database: SQLite configuration
        object_store: S3 configuration
        coordinator: Timeouts and sweep concurrency
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.MEMORY
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("EVENTSYNC_STORE_BACKEND", "memory").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid EVENTSYNC_STORE_BACKEND '{backend_str}'. Must be one of: memory, remote"
            )

        config = cls(
            store_backend=store_backend,
            ledger=LedgerConfig.from_env(),
            database=DatabaseConfig.from_env(),
            object_store=ObjectStoreConfig.from_env(),
            coordinator=CoordinatorConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.coordinator.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive")
        if self.coordinator.sync_concurrency < 1:
            raise ValueError("SYNC_CONCURRENCY must be at least 1")
        if self.ledger.max_retries < 0:
            raise ValueError("LEDGER_MAX_RETRIES must not be negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if self.store_backend == StoreBackend.REMOTE:
            if not self.ledger.gateway_url:
                raise ValueError("LEDGER_GATEWAY_URL is required when EVENTSYNC_STORE_BACKEND=remote")
            if not self.object_store.bucket:
                raise ValueError("S3_BUCKET is required when EVENTSYNC_STORE_BACKEND=remote")
            if not os.path.exists(self.database.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.database.data_dir}. "
                    "It will be created on first write."
                )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        remote = self.store_backend == StoreBackend.REMOTE
        logger.info(
            "Engine configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "ledger_gateway": self.ledger.gateway_url if remote else None,
                "ledger_chain_id": self.ledger.chain_id,
                "ledger_api_key": "***" if self.ledger.api_key else None,
                "s3_bucket": self.object_store.bucket if remote else None,
                "s3_endpoint": self.object_store.endpoint_url if remote else None,
                "data_dir": self.database.data_dir if remote else None,
                "store_timeout_seconds": self.coordinator.store_timeout_seconds,
                "sync_concurrency": self.coordinator.sync_concurrency,
                "log_level": self.observability.log_level,
            },
        )
