"""
Storage layer for memory entries.
"""

from .interfaces import (
    InitializationError,
    MaintenanceError,
    MemoryBackendError,
    MemoryBackendInterface,
    StoreError,
)
from .backends.postgresql import PostgreSQLBackend
from .backends.sqlite import SqliteBackend
from .factory import (
    create_storage,
    create_storage_for_target,
    is_backend_available,
    list_available_backends,
)

__all__ = [
    "MemoryBackendInterface",
    "MemoryBackendError",
    "InitializationError",
    "StoreError",
    "MaintenanceError",
    "PostgreSQLBackend",
    "SqliteBackend",
    "create_storage",
    "create_storage_for_target",
    "is_backend_available",
    "list_available_backends",
]
