"""
Shared fixtures: configuration isolation, source databases and backends.
"""

import pytest

import memory_bridge.config.config_manager as config_module
from memory_bridge.config.config_manager import ConfigManager
from memory_bridge.performance.connection_pool import PoolConfig
from memory_bridge.storage.backends.sqlite import SqliteBackend

from tests.factories import create_source_db, make_row

CONFIG_ENV_VARS = (
    "ENVIRONMENT",
    "DEBUG",
    "MEMORY_BACKEND",
    "DATABASE_URL",
    "POSTGRES_SCHEMA",
    "POSTGRES_POOL_MAX",
    "POSTGRES_POOL_MIN",
    "POSTGRES_IDLE_TIMEOUT",
    "POSTGRES_CONNECT_TIMEOUT",
    "SQLITE_DATABASE_PATH",
    "SQLITE_POOL_MAX",
    "MIGRATION_SOURCE_PATH",
    "MIGRATION_BATCH_SIZE",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_FILE",
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Give every test a fresh configuration free of ambient settings."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MEMORY_BRIDGE_CONFIG_DIR", str(tmp_path / "config"))
    ConfigManager.reset()
    config_module._config_manager = None
    yield
    ConfigManager.reset()
    config_module._config_manager = None


@pytest.fixture
def source_db(tmp_path):
    """Source database with ten valid rows."""
    return create_source_db(tmp_path / "source.db", [make_row(i) for i in range(10)])


@pytest.fixture
async def sqlite_backend(tmp_path):
    """Initialized SQLite backend with its schema."""
    backend = SqliteBackend(
        database_path=str(tmp_path / "target.db"),
        pool_config=PoolConfig(max_connections=3, enable_monitoring=False),
    )
    await backend.initialize()
    yield backend
    await backend.shutdown()
