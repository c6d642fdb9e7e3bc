"""
Abstract interface for memory storage backends.

This module defines the contract that all memory backend implementations
must follow to ensure consistent behavior across different databases.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from memory_bridge.codec.entry_codec import parse_timestamp
from memory_bridge.model.memory_entry import MemoryEntry, MemoryQuery


class MemoryBackendInterface(ABC):
    """
    Abstract base class for memory storage backends.

    A backend owns its target schema and one bounded connection pool. Every
    operation borrows a connection from that pool for a single statement or
    unit of work and returns it on every exit path.
    """

    # Lifecycle
    @abstractmethod
    async def initialize(self, create_schema: bool = True) -> None:
        """
        Open the connection pool and check the database answers.

        Args:
            create_schema: Also create tables and indexes if they are absent

        Raises:
            InitializationError: If the pool, the liveness check or the DDL fails
        """
        pass

    @abstractmethod
    async def create_schema(self) -> None:
        """
        Idempotently create tables and indexes.

        Raises:
            InitializationError: If the DDL fails
        """
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Drain and close the pool. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        """Whether ``initialize`` has completed and ``shutdown`` has not run."""
        pass

    # Entry Operations
    @abstractmethod
    async def store(self, entry: MemoryEntry) -> None:
        """
        Insert an entry, or overwrite every mutable field if its id exists.

        Raises:
            StoreError: On constraint violation or connectivity loss
        """
        pass

    @abstractmethod
    async def store_batch(self, entries: Sequence[MemoryEntry]) -> None:
        """
        Upsert a batch of entries as one atomic write.

        Raises:
            StoreError: If the batch write fails; no entry of the batch is kept
        """
        pass

    @abstractmethod
    async def retrieve(self, entry_id: str) -> Optional[MemoryEntry]:
        """
        Retrieve an entry by its id.

        Returns:
            The entry, or None if no entry has that id
        """
        pass

    async def update(self, entry_id: str, entry: MemoryEntry) -> None:
        """
        Update an entry. Shares the upsert path with ``store``, so the entry
        does not need to exist beforehand.
        """
        await self.store(entry)

    @abstractmethod
    async def delete(self, entry_id: str) -> None:
        """
        Delete an entry. Children referencing it keep existing with a null
        ``parent_id``.
        """
        pass

    # Query Operations
    @abstractmethod
    async def query(self, query: Union[MemoryQuery, Dict[str, Any]]) -> List[MemoryEntry]:
        """
        Find entries matching a filter.

        Args:
            query: MemoryQuery, or a dict with the same optional keys

        Returns:
            Matching entries ordered by timestamp, newest first

        Raises:
            ValueError: On an unknown field, an unparsable time bound or a
                negative limit or offset
        """
        pass

    @abstractmethod
    async def get_all_entries(self) -> List[MemoryEntry]:
        """Return every entry, newest first."""
        pass

    @abstractmethod
    async def count_entries(self) -> int:
        """Return the number of stored entries."""
        pass

    # Health and Maintenance
    @abstractmethod
    async def get_health_status(self) -> Dict[str, Any]:
        """
        Report backend health. Never raises.

        Returns:
            ``{"healthy": False, "error": str}`` on failure, otherwise
            ``{"healthy": True, "metrics": {...}}`` with entry count, storage
            size and pool utilization
        """
        pass

    @abstractmethod
    async def perform_maintenance(self) -> None:
        """
        Refresh planner statistics and reclaim space without blocking CRUD.

        Raises:
            MaintenanceError: If the database rejects the operation
        """
        pass

    @staticmethod
    def _coerce_query(query: Union[MemoryQuery, Dict[str, Any], None]) -> MemoryQuery:
        """
        Normalize a query argument, parsing string or epoch time bounds.

        Raises:
            ValueError: If a field is unknown or a time bound is unparsable
        """
        if query is None:
            return MemoryQuery()
        if not isinstance(query, MemoryQuery):
            query = MemoryQuery.from_dict(query)
        for name in ("start_time", "end_time"):
            value = getattr(query, name)
            if value is not None and not isinstance(value, datetime):
                query = replace(query, **{name: parse_timestamp(value)})
        return query


class MemoryBackendError(Exception):
    """Base exception for memory backend related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class InitializationError(MemoryBackendError):
    """Exception raised when pool setup, the liveness check or DDL fails."""
    pass


class StoreError(MemoryBackendError):
    """Exception raised for failed reads and writes against the backend."""
    pass


class MaintenanceError(MemoryBackendError):
    """Exception raised when maintenance is unsupported or rejected."""
    pass


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so the text matches literally (escape char ``\\``)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
