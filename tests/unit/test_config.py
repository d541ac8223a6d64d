"""
Unit tests for environment configuration.

Tests cover:
- Defaults
- Environment overrides
- Validation failures
- Secret redaction
"""

import logging

import pytest

from ticketing.eventsync.config import (
    CoordinatorConfig,
    DatabaseConfig,
    EngineConfig,
    LedgerConfig,
    ObjectStoreConfig,
    StoreBackend,
)
from ticketing.eventsync.model import StoreKind
from ticketing.eventsync.stores.base import create_store_adapters
from ticketing.eventsync.stores.database import SqliteEventStore
from ticketing.eventsync.stores.ledger import LedgerGatewayAdapter
from ticketing.eventsync.stores.memory import InMemoryLedger, InMemoryObjectStore
from ticketing.eventsync.stores.object_store import S3ObjectStore


class TestEngineConfig:
    """Tests for EngineConfig.from_env."""

    def test_defaults(self, monkeypatch):
        """Memory backend is the default and needs nothing else."""
        monkeypatch.delenv("EVENTSYNC_STORE_BACKEND", raising=False)
        config = EngineConfig.from_env()

        assert config.store_backend == StoreBackend.MEMORY
        assert config.coordinator.store_timeout_seconds == 10.0
        assert config.ledger.chain_id == 43113

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("EVENTSYNC_STORE_BACKEND", "remote")
        monkeypatch.setenv("LEDGER_GATEWAY_URL", "http://relayer:9000")
        monkeypatch.setenv("LEDGER_CHAIN_ID", "43114")
        monkeypatch.setenv("S3_BUCKET", "media")
        monkeypatch.setenv("S3_PREFIX", "/events/")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("STORE_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("SYNC_CONCURRENCY", "8")

        config = EngineConfig.from_env()

        assert config.store_backend == StoreBackend.REMOTE
        assert config.ledger.gateway_url == "http://relayer:9000"
        assert config.ledger.chain_id == 43114
        assert config.object_store.bucket == "media"
        assert config.object_store.prefix == "events"
        assert config.database.wal_mode is False
        assert config.coordinator.store_timeout_seconds == 2.5
        assert config.coordinator.sync_concurrency == 8

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("EVENTSYNC_STORE_BACKEND", "carrier-pigeon")
        with pytest.raises(ValueError, match="EVENTSYNC_STORE_BACKEND"):
            EngineConfig.from_env()

    def test_invalid_timeout(self):
        config = EngineConfig(coordinator=CoordinatorConfig(store_timeout_seconds=0))
        with pytest.raises(ValueError, match="STORE_TIMEOUT_SECONDS"):
            config.validate()

    def test_invalid_concurrency(self):
        config = EngineConfig(coordinator=CoordinatorConfig(sync_concurrency=0))
        with pytest.raises(ValueError, match="SYNC_CONCURRENCY"):
            config.validate()

    def test_remote_requires_bucket(self):
        config = EngineConfig(
            store_backend=StoreBackend.REMOTE,
            object_store=ObjectStoreConfig(bucket=""),
        )
        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()

    def test_log_config_redacts_secrets(self, caplog):
        config = EngineConfig(ledger=LedgerConfig(api_key="super-secret"))
        with caplog.at_level(logging.INFO, logger="ticketing.eventsync.config"):
            config.log_config()

        record = caplog.records[-1]
        assert record.ledger_api_key == "***"
        assert "super-secret" not in caplog.text


class TestCreateStoreAdapters:
    """Tests for the adapter factory."""

    def test_memory_backend(self):
        adapters = create_store_adapters(EngineConfig())

        assert isinstance(adapters[StoreKind.LEDGER], InMemoryLedger)
        assert isinstance(adapters[StoreKind.OBJECT_STORE], InMemoryObjectStore)
        assert set(adapters) == set(StoreKind)

    def test_remote_backend(self, tmp_path):
        config = EngineConfig(
            store_backend=StoreBackend.REMOTE,
            database=DatabaseConfig(data_dir=str(tmp_path)),
        )
        adapters = create_store_adapters(config)

        assert isinstance(adapters[StoreKind.LEDGER], LedgerGatewayAdapter)
        assert isinstance(adapters[StoreKind.DATABASE], SqliteEventStore)
        assert isinstance(adapters[StoreKind.OBJECT_STORE], S3ObjectStore)
        assert adapters[StoreKind.DATABASE].db_path == tmp_path / "events.db"
