from .memory_backend_interface import (
    InitializationError,
    MaintenanceError,
    MemoryBackendError,
    MemoryBackendInterface,
    StoreError,
)

__all__ = [
    "MemoryBackendInterface",
    "MemoryBackendError",
    "InitializationError",
    "StoreError",
    "MaintenanceError",
]
