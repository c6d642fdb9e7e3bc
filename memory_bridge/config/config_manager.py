"""
Centralized Configuration Management System

This module provides the configuration system for memory-bridge:
- Centralizes storage, migration and logging settings
- Supports environment-specific overrides
- Validates configuration on startup
- Provides type-safe access to configuration values
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, Optional, Union
from pathlib import Path
from dataclasses import dataclass, field
from enum import Enum
import threading


class Environment(Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BackendType(Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


@dataclass
class SqliteBackendConfig:
    """SQLite backend configuration"""

    database_path: str = "./data/memory.db"
    max_connections: int = 5
    connection_timeout: float = 30.0


@dataclass
class PostgreSQLBackendConfig:
    """PostgreSQL backend configuration"""

    connection_string: Optional[str] = None
    schema: str = "memory_bridge"
    max_connections: int = 20
    min_connections: int = 1
    idle_timeout: float = 30.0  # seconds
    connection_timeout: float = 2.0  # seconds


@dataclass
class StorageConfig:
    """Storage layer configuration"""

    backend: BackendType = BackendType.SQLITE
    sqlite: SqliteBackendConfig = field(default_factory=SqliteBackendConfig)
    postgresql: PostgreSQLBackendConfig = field(default_factory=PostgreSQLBackendConfig)


@dataclass
class MigrationConfig:
    """Migration run defaults"""

    source_path: str = "./.swarm/memory.db"
    batch_size: int = 1000
    verify: bool = False
    dry_run: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration"""

    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    enable_console: bool = True


@dataclass
class AppConfig:
    """Main application configuration"""

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    storage: StorageConfig = field(default_factory=StorageConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""

    pass


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


# Enum-typed settings, converted from their plain file/env representation
_ENUM_PATHS = {
    "environment": lambda x: Environment(x.lower()),
    "storage.backend": lambda x: BackendType(x.lower()),
    "logging.level": lambda x: LogLevel(x.upper()),
}


class ConfigManager:
    """
    Centralized configuration manager with support for:
    - Environment-specific configurations
    - Configuration validation
    - Dynamic configuration updates
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton pattern implementation"""
        if not cls._instance:
            with cls._lock:
                if not cls._instance:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        # Avoid re-initialization in singleton
        if hasattr(self, "_initialized"):
            return

        self._initialized = True

        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = Path(os.getenv("MEMORY_BRIDGE_CONFIG_DIR", "config"))

        self.config: AppConfig = AppConfig()
        self.logger = logging.getLogger(__name__)

        self._load_configuration()

    @classmethod
    def reset(cls):
        """Drop the singleton so the next instantiation reloads from scratch."""
        with cls._lock:
            cls._instance = None

    def _load_configuration(self):
        """Load configuration from multiple sources in priority order"""
        # 1. Load default configuration
        self.config = AppConfig()

        # 2. Load base configuration file
        self._load_from_file("config.yaml")
        self._load_from_file("config.json")

        # 3. Load environment-specific configuration
        env = os.getenv("ENVIRONMENT", "development").lower()
        self._load_from_file(f"environments/config.{env}.yaml")
        self._load_from_file(f"environments/config.{env}.json")

        # 4. Load from environment variables (highest priority)
        self._load_from_environment()

        # 5. Validate configuration
        self._validate_configuration()

    def _load_from_file(self, filename: str):
        """Load configuration from YAML/JSON file"""
        file_path = self.config_dir / filename
        if not file_path.exists():
            return

        try:
            with open(file_path, "r") as f:
                if filename.endswith(".yaml") or filename.endswith(".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)

            if data:
                self._update_config_from_dict(data)
                self.logger.info(f"Loaded configuration from {filename}")

        except (OSError, ValueError, yaml.YAMLError) as e:
            self.logger.warning(f"Failed to load configuration from {filename}: {e}")

    def _load_from_environment(self):
        """Load configuration from environment variables"""
        env_mappings = {
            # Environment
            "ENVIRONMENT": ("environment", _ENUM_PATHS["environment"]),
            "DEBUG": ("debug", _parse_bool),
            # Storage
            "MEMORY_BACKEND": ("storage.backend", _ENUM_PATHS["storage.backend"]),
            "DATABASE_URL": ("storage.postgresql.connection_string", str),
            "POSTGRES_SCHEMA": ("storage.postgresql.schema", str),
            "POSTGRES_POOL_MAX": ("storage.postgresql.max_connections", int),
            "POSTGRES_POOL_MIN": ("storage.postgresql.min_connections", int),
            "POSTGRES_IDLE_TIMEOUT": ("storage.postgresql.idle_timeout", float),
            "POSTGRES_CONNECT_TIMEOUT": ("storage.postgresql.connection_timeout", float),
            "SQLITE_DATABASE_PATH": ("storage.sqlite.database_path", str),
            "SQLITE_POOL_MAX": ("storage.sqlite.max_connections", int),
            # Migration
            "MIGRATION_SOURCE_PATH": ("migration.source_path", str),
            "MIGRATION_BATCH_SIZE": ("migration.batch_size", int),
            # Logging
            "LOG_LEVEL": ("logging.level", _ENUM_PATHS["logging.level"]),
            "LOG_FORMAT": ("logging.format", str),
            "LOG_FILE": ("logging.file_path", str),
        }

        for env_var, (config_path, converter) in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                try:
                    self._set_nested_attr(self.config, config_path, converter(value))
                except (ValueError, TypeError) as e:
                    self.logger.warning(f"Invalid value for {env_var}: {value}, error: {e}")

    def _update_config_from_dict(self, data: Dict[str, Any], prefix: str = ""):
        """Update configuration from dictionary recursively"""
        for key, value in data.items():
            config_path = f"{prefix}.{key}" if prefix else key

            if isinstance(value, dict):
                self._update_config_from_dict(value, config_path)
            else:
                try:
                    if config_path in _ENUM_PATHS and isinstance(value, str):
                        value = _ENUM_PATHS[config_path](value)
                    self._set_nested_attr(self.config, config_path, value)
                except AttributeError:
                    self.logger.warning(f"Unknown configuration key: {config_path}")
                except ValueError as e:
                    self.logger.warning(f"Invalid value for {config_path}: {value}, error: {e}")

    def _set_nested_attr(self, obj: Any, path: str, value: Any):
        """Set nested attribute using dot notation"""
        parts = path.split(".")
        for part in parts[:-1]:
            obj = getattr(obj, part)
        if not hasattr(obj, parts[-1]):
            raise AttributeError(path)
        setattr(obj, parts[-1], value)

    def _validate_configuration(self, require_backend_url: bool = False):
        """Validate configuration settings"""
        errors = []
        storage = self.config.storage

        # Only required once the configured backend is actually opened
        if (
            require_backend_url
            and storage.backend == BackendType.POSTGRESQL
            and not storage.postgresql.connection_string
        ):
            errors.append("DATABASE_URL is required for the postgresql backend")

        if storage.postgresql.max_connections < 1:
            errors.append("PostgreSQL max_connections must be at least 1")

        if storage.postgresql.min_connections < 0:
            errors.append("PostgreSQL min_connections must not be negative")

        if storage.postgresql.min_connections > storage.postgresql.max_connections:
            errors.append("PostgreSQL min_connections must not exceed max_connections")

        if storage.postgresql.idle_timeout <= 0 or storage.postgresql.connection_timeout <= 0:
            errors.append("PostgreSQL timeouts must be positive")

        if not storage.sqlite.database_path:
            errors.append("SQLite database_path is required")

        if storage.sqlite.max_connections < 1:
            errors.append("SQLite max_connections must be at least 1")

        if self.config.migration.batch_size <= 0:
            errors.append("Migration batch_size must be positive")

        if errors:
            raise ConfigValidationError(f"Configuration validation failed: {'; '.join(errors)}")

        self.logger.debug("Configuration validation passed")

    def validate(self):
        """
        Validate the current configuration, including that a PostgreSQL
        backend selection comes with a connection string.

        Raises:
            ConfigValidationError: If any setting is invalid
        """
        self._validate_configuration(require_backend_url=True)

    def reload_configuration(self):
        """Reload configuration from all sources"""
        try:
            self._load_configuration()
            self.logger.info("Configuration reloaded successfully")
        except Exception as e:
            self.logger.error(f"Failed to reload configuration: {e}")
            raise

    def get(self, path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        try:
            obj = self.config
            for part in path.split("."):
                obj = getattr(obj, part)
            return obj
        except AttributeError:
            return default

    def set(self, path: str, value: Any):
        """Set configuration value using dot notation"""
        self._set_nested_attr(self.config, path, value)
        self._validate_configuration()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""

        def _asdict_recursive(obj):
            if hasattr(obj, "__dict__"):
                result = {}
                for key, value in obj.__dict__.items():
                    if isinstance(value, Enum):
                        result[key] = value.value
                    elif hasattr(value, "__dict__"):
                        result[key] = _asdict_recursive(value)
                    else:
                        result[key] = value
                return result
            return obj

        return _asdict_recursive(self.config)

    def save_to_file(self, filename: str, format: str = "yaml"):
        """Save current configuration to file"""
        file_path = self.config_dir / filename
        file_path.parent.mkdir(parents=True, exist_ok=True)
        config_dict = self.to_dict()

        with open(file_path, "w") as f:
            if format.lower() == "yaml":
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            else:
                json.dump(config_dict, f, indent=2)

        self.logger.info(f"Configuration saved to {file_path}")

    def get_backend_settings(self, backend: Optional[str] = None) -> Dict[str, Any]:
        """
        Get constructor settings for a storage backend.

        Args:
            backend: ``sqlite`` or ``postgresql``; defaults to the configured backend

        Returns:
            Dictionary with ``backend`` and ``backend_config`` keys
        """
        storage = self.config.storage
        backend_type = BackendType(backend.lower()) if backend else storage.backend

        if backend_type == BackendType.POSTGRESQL:
            pg = storage.postgresql
            backend_config = {
                "connection_string": pg.connection_string,
                "schema": pg.schema,
                "max_connections": pg.max_connections,
                "min_connections": pg.min_connections,
                "idle_timeout": pg.idle_timeout,
                "connection_timeout": pg.connection_timeout,
            }
        else:
            sqlite = storage.sqlite
            backend_config = {
                "database_path": sqlite.database_path,
                "max_connections": sqlite.max_connections,
                "connection_timeout": sqlite.connection_timeout,
            }

        return {"backend": backend_type.value, "backend_config": backend_config}


# Global configuration instance
_config_manager: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Get the global configuration manager instance"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def init_config(config_dir: Optional[Union[str, Path]] = None) -> ConfigManager:
    """Initialize the global configuration manager"""
    global _config_manager
    ConfigManager.reset()
    _config_manager = ConfigManager(config_dir)
    return _config_manager
