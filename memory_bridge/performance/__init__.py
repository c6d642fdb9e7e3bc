"""
Performance utilities for Memory Bridge backends.
"""

from .connection_pool import (
    ConnectionPool,
    PoolConfig,
    ConnectionMetrics,
    PoolExhaustedError,
    SQLiteConnectionFactory,
)

__all__ = [
    "ConnectionPool",
    "PoolConfig",
    "ConnectionMetrics",
    "PoolExhaustedError",
    "SQLiteConnectionFactory",
]
