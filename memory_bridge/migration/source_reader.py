"""
Readers for migration sources.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from memory_bridge.storage.interfaces.memory_backend_interface import InitializationError

logger = logging.getLogger(__name__)

# Columns a page may be ordered by
ORDER_KEYS = frozenset({"timestamp", "id", "agent_id", "session_id", "type", "version"})


class SourceReaderInterface(ABC):
    """Read-only access to the rows of a migration source."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def count(self) -> int:
        """Return the number of rows in the source."""
        pass

    @abstractmethod
    async def page(self, order_key: str, limit: int, offset: int) -> List[Dict[str, Any]]:
        """
        Return one page of raw rows.

        Args:
            order_key: Column to sort by, ascending; ties are broken by id
            limit: Maximum number of rows
            offset: Rows to skip

        Returns:
            Rows as plain dictionaries keyed by column name
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class SqliteSourceReader(SourceReaderInterface):
    """Reads ``memory_entries`` rows from a SQLite database opened read-only."""

    def __init__(self, database_path: str, table: str = "memory_entries"):
        self.database_path = Path(database_path)
        self.table = table
        self._conn: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        if self._conn is not None:
            return

        if not self.database_path.is_file():
            raise InitializationError(
                f"Source database not found: {self.database_path}",
                {"path": str(self.database_path)},
            )

        try:
            self._conn = await aiosqlite.connect(
                f"{self.database_path.resolve().as_uri()}?mode=ro", uri=True
            )
            self._conn.row_factory = aiosqlite.Row
            async with self._conn.execute(f"SELECT 1 FROM {self.table} LIMIT 1"):
                pass
        except Exception as e:
            await self.close()
            raise InitializationError(
                "Failed to open migration source", {"path": str(self.database_path), "error": str(e)}
            ) from e

        logger.info(f"Opened migration source {self.database_path}")

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Source reader not initialized")
        return self._conn

    async def count(self) -> int:
        async with self._connection().execute(f"SELECT COUNT(*) FROM {self.table}") as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def page(self, order_key: str, limit: int, offset: int) -> List[Dict[str, Any]]:
        if order_key not in ORDER_KEYS:
            raise ValueError(f"Unsupported order key: {order_key!r}")

        sql = f"SELECT * FROM {self.table} ORDER BY {order_key}, id LIMIT ? OFFSET ?"
        async with self._connection().execute(sql, (limit, offset)) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()
