"""
Storage factory for creating memory backend instances.

This module provides factory functions to instantiate the appropriate
memory backend based on configuration settings or a connection string.
"""
import logging
from typing import Dict, Any, Optional, List

from memory_bridge.config import get_config
from memory_bridge.performance.connection_pool import PoolConfig
from memory_bridge.storage.backends.postgresql import PostgreSQLBackend
from memory_bridge.storage.backends.sqlite import SqliteBackend
from memory_bridge.storage.interfaces.memory_backend_interface import MemoryBackendInterface

POSTGRES_SCHEMES = ("postgres://", "postgresql://")


class StorageFactory:
    """
    Factory class for creating memory backend instances.

    Backends are configured from the application configuration; callers may
    override individual constructor settings.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._backends = {
            "sqlite": SqliteBackend,
            "postgresql": PostgreSQLBackend,
        }

    def create_storage(self, backend_type: Optional[str] = None,
                       config_override: Optional[Dict[str, Any]] = None) -> MemoryBackendInterface:
        """
        Create a memory backend instance.

        Args:
            backend_type: Type of backend to create ('sqlite', 'postgresql').
                          If None, uses configuration setting.
            config_override: Optional settings replacing configured values.

        Returns:
            Configured, not yet initialized backend instance

        Raises:
            ValueError: If the backend type is not supported or misconfigured
        """
        if backend_type is not None and backend_type.lower() not in self._backends:
            raise ValueError(f"Unsupported backend type '{backend_type}'. "
                             f"Available backends: {self.list_available_backends()}")

        settings = get_config().get_backend_settings(backend_type)
        backend_type = settings["backend"]
        backend_config = settings["backend_config"]
        if config_override:
            backend_config.update(config_override)

        if backend_type == "postgresql":
            return self._create_postgresql_storage(backend_config)
        return self._create_sqlite_storage(backend_config)

    def create_for_target(self, target: str,
                          config_override: Optional[Dict[str, Any]] = None) -> MemoryBackendInterface:
        """
        Create a backend for a migration target.

        ``postgres://`` and ``postgresql://`` URLs select PostgreSQL; anything
        else is taken as a SQLite database path.
        """
        override = dict(config_override or {})
        if target.startswith(POSTGRES_SCHEMES):
            override["connection_string"] = target
            return self.create_storage("postgresql", override)
        override["database_path"] = target
        return self.create_storage("sqlite", override)

    def _create_postgresql_storage(self, config: Dict[str, Any]) -> PostgreSQLBackend:
        """Create PostgreSQL storage instance with proper configuration."""
        if not config.get("connection_string"):
            raise ValueError("PostgreSQL backend requires a connection string (DATABASE_URL)")

        return PostgreSQLBackend(
            connection_string=config["connection_string"],
            schema=config.get("schema", "memory_bridge"),
            max_connections=config.get("max_connections", 20),
            min_connections=config.get("min_connections", 1),
            idle_timeout=config.get("idle_timeout", 30.0),
            connection_timeout=config.get("connection_timeout", 2.0),
        )

    def _create_sqlite_storage(self, config: Dict[str, Any]) -> SqliteBackend:
        """Create SQLite storage instance with proper configuration."""
        pool_config = PoolConfig(
            max_connections=config.get("max_connections", 5),
            connection_timeout=config.get("connection_timeout", 30.0),
        )
        return SqliteBackend(
            database_path=config.get("database_path", "./data/memory.db"),
            pool_config=pool_config,
        )

    def list_available_backends(self) -> List[str]:
        """
        List all available storage backends.

        Returns:
            List of backend type names
        """
        return list(self._backends.keys())

    def is_backend_available(self, backend_type: str) -> bool:
        """
        Check if a specific backend is available.

        Args:
            backend_type: Type of backend to check

        Returns:
            True if backend is available, False otherwise
        """
        return backend_type in self._backends


# Global factory instance
_storage_factory = StorageFactory()


def create_storage(backend_type: Optional[str] = None,
                   config_override: Optional[Dict[str, Any]] = None) -> MemoryBackendInterface:
    """
    Create a memory backend instance using the global factory.

    Args:
        backend_type: Type of backend to create ('sqlite', 'postgresql').
                      If None, uses configuration setting.
        config_override: Optional settings replacing configured values.

    Returns:
        Configured, not yet initialized backend instance
    """
    return _storage_factory.create_storage(backend_type, config_override)


def create_storage_for_target(target: str,
                              config_override: Optional[Dict[str, Any]] = None) -> MemoryBackendInterface:
    """Create a backend from a PostgreSQL URL or a SQLite database path."""
    return _storage_factory.create_for_target(target, config_override)


def list_available_backends() -> List[str]:
    """
    List all available storage backends.

    Returns:
        List of backend type names
    """
    return _storage_factory.list_available_backends()


def is_backend_available(backend_type: str) -> bool:
    """
    Check if a specific backend is available.

    Args:
        backend_type: Type of backend to check

    Returns:
        True if backend is available, False otherwise
    """
    return _storage_factory.is_backend_available(backend_type)
