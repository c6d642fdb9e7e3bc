from .config_manager import (
    AppConfig,
    BackendType,
    ConfigManager,
    ConfigValidationError,
    Environment,
    LoggingConfig,
    get_config,
    init_config,
)

__all__ = [
    "AppConfig",
    "BackendType",
    "ConfigManager",
    "ConfigValidationError",
    "Environment",
    "LoggingConfig",
    "get_config",
    "init_config",
]
