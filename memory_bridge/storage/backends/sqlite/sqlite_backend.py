"""
SQLite storage implementation for memory entries.

This module provides a SQLite-based implementation of the
MemoryBackendInterface. Connections come from a bounded aiosqlite pool, the
database runs in WAL mode so readers are not blocked by maintenance, and JSON
columns are stored as text and queried through SQLite's JSON1 functions.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Union

from memory_bridge.codec.entry_codec import (
    ENTRY_COLUMNS,
    entry_to_row,
    format_timestamp,
    row_to_dict,
    row_to_entry,
)
from memory_bridge.model.memory_entry import MemoryEntry, MemoryQuery
from memory_bridge.performance.connection_pool import (
    Connection,
    ConnectionPool,
    PoolConfig,
    SQLiteConnectionFactory,
)
from memory_bridge.storage.interfaces.memory_backend_interface import (
    InitializationError,
    MaintenanceError,
    MemoryBackendError,
    MemoryBackendInterface,
    StoreError,
    escape_like,
)

_UPSERT_SQL = f"""
    INSERT INTO memory_entries ({", ".join(ENTRY_COLUMNS)})
    VALUES ({", ".join("?" for _ in ENTRY_COLUMNS)})
    ON CONFLICT (id) DO UPDATE SET
        agent_id = excluded.agent_id,
        session_id = excluded.session_id,
        type = excluded.type,
        content = excluded.content,
        context = excluded.context,
        timestamp = excluded.timestamp,
        tags = excluded.tags,
        version = excluded.version,
        parent_id = excluded.parent_id,
        metadata = excluded.metadata,
        updated_at = CURRENT_TIMESTAMP
"""

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS memory_entries (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        type TEXT NOT NULL,
        content TEXT NOT NULL,
        context TEXT NOT NULL DEFAULT '{}',  -- JSON object
        timestamp TEXT NOT NULL,  -- fixed-width UTC ISO-8601
        tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
        version INTEGER NOT NULL DEFAULT 1,
        parent_id TEXT,
        metadata TEXT,  -- JSON object
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (parent_id) REFERENCES memory_entries (id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS swarm_metadata (
        id TEXT PRIMARY KEY,
        swarm_id TEXT NOT NULL,
        agent_id TEXT,
        metadata_type TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS worktree_sessions (
        id TEXT PRIMARY KEY,
        session_name TEXT NOT NULL,
        workspace_path TEXT,
        agent_assignments TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        last_activity TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memory_entries_agent_id ON memory_entries (agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entries_session_id ON memory_entries (session_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entries_type ON memory_entries (type)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entries_timestamp ON memory_entries (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_memory_entries_parent_id ON memory_entries (parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_swarm_metadata_swarm_id ON swarm_metadata (swarm_id)",
    "CREATE INDEX IF NOT EXISTS idx_swarm_metadata_agent_id ON swarm_metadata (agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_swarm_metadata_type ON swarm_metadata (metadata_type)",
    "CREATE INDEX IF NOT EXISTS idx_worktree_sessions_name ON worktree_sessions (session_name)",
    "CREATE INDEX IF NOT EXISTS idx_worktree_sessions_status ON worktree_sessions (status)",
    "CREATE INDEX IF NOT EXISTS idx_worktree_sessions_activity ON worktree_sessions (last_activity)",
]


class SqliteBackend(MemoryBackendInterface):
    """
    SQLite-based implementation of the MemoryBackendInterface.

    Suitable for single-host deployments and for exercising the full backend
    contract without a database server.
    """

    def __init__(
        self,
        database_path: str = "./data/memory.db",
        pool_config: Optional[PoolConfig] = None,
    ):
        """
        Initialize SqliteBackend with database path.

        Args:
            database_path: Path to the SQLite database file
            pool_config: Connection pool settings
        """
        self.database_path = Path(database_path)
        self.pool_config = pool_config or PoolConfig(max_connections=5)
        self.logger = logging.getLogger(__name__)

        self._pool: Optional[ConnectionPool] = None

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    # Lifecycle
    async def initialize(self, create_schema: bool = True) -> None:
        """Open the pool, check the database answers and optionally create the schema."""
        if self._pool is not None:
            return

        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

            factory = SQLiteConnectionFactory(str(self.database_path))
            self._pool = ConnectionPool(factory, self.pool_config)

            async with self._pool.acquire() as conn:
                await conn.fetchone("SELECT 1")

            if create_schema:
                await self.create_schema()

            self.logger.info(f"Initialized SQLite backend at {self.database_path}")

        except Exception as e:
            self.logger.error(f"Failed to initialize SQLite backend: {e}")
            await self._close_pool()
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(
                "Failed to initialize SQLite backend", {"error": str(e)}
            ) from e

    async def create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        try:
            async with self._connection(InitializationError) as conn:
                # auto_vacuum only takes effect if set before the first table exists
                await conn.execute("PRAGMA auto_vacuum = INCREMENTAL")
                await conn.fetchone("PRAGMA journal_mode = WAL")
                for statement in _SCHEMA_STATEMENTS:
                    await conn.execute(statement)
                await conn.commit()
        except InitializationError:
            raise
        except Exception as e:
            raise InitializationError("Failed to create schema", {"error": str(e)}) from e

        self.logger.debug("SQLite schema ensured")

    async def shutdown(self) -> None:
        """Close the pool."""
        if self._pool is None:
            return
        await self._close_pool()
        self.logger.info("SQLite backend shut down")

    async def _close_pool(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()

    @asynccontextmanager
    async def _connection(
        self, error_cls: type = StoreError
    ) -> AsyncGenerator[Connection, None]:
        if self._pool is None:
            raise error_cls("Database not initialized")
        async with self._pool.acquire() as conn:
            yield conn

    # Entry Operations
    async def store(self, entry: MemoryEntry) -> None:
        """Upsert a single entry."""
        try:
            async with self._connection() as conn:
                try:
                    await conn.execute(_UPSERT_SQL, entry_to_row(entry, iso_timestamp=True))
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error storing entry {entry.id}: {e}")
            raise StoreError("Failed to store entry", {"id": entry.id, "error": str(e)}) from e

    async def store_batch(self, entries: Sequence[MemoryEntry]) -> None:
        """Upsert a batch inside one transaction with deferred foreign keys."""
        if not entries:
            return

        rows = [entry_to_row(entry, iso_timestamp=True) for entry in entries]
        try:
            async with self._connection() as conn:
                try:
                    await conn.execute("BEGIN")
                    # Lets a child precede its parent within the same batch
                    await conn.execute("PRAGMA defer_foreign_keys = ON")
                    await conn.executemany(_UPSERT_SQL, rows)
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error storing batch of {len(rows)} entries: {e}")
            raise StoreError(
                "Failed to store batch", {"size": len(rows), "error": str(e)}
            ) from e

    async def retrieve(self, entry_id: str) -> Optional[MemoryEntry]:
        """Retrieve an entry by its id."""
        try:
            async with self._connection() as conn:
                row = await conn.fetchone("SELECT * FROM memory_entries WHERE id = ?", (entry_id,))
            if row is None:
                return None
            return row_to_entry(row_to_dict(row))
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error retrieving entry {entry_id}: {e}")
            raise StoreError("Failed to retrieve entry", {"id": entry_id, "error": str(e)}) from e

    async def delete(self, entry_id: str) -> None:
        """Delete an entry; the foreign key nulls its children's parent_id."""
        try:
            async with self._connection() as conn:
                try:
                    await conn.execute("DELETE FROM memory_entries WHERE id = ?", (entry_id,))
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error deleting entry {entry_id}: {e}")
            raise StoreError("Failed to delete entry", {"id": entry_id, "error": str(e)}) from e

    # Query Operations
    async def query(self, query: Union[MemoryQuery, Dict[str, Any]]) -> List[MemoryEntry]:
        """Find entries matching a filter, newest first."""
        query = self._coerce_query(query)
        sql, params = self._build_query(query)

        try:
            async with self._connection() as conn:
                rows = await conn.fetchall(sql, params)
            return [row_to_entry(row_to_dict(row)) for row in rows]
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error querying entries: {e}")
            raise StoreError("Failed to query entries", {"error": str(e)}) from e

    def _build_query(self, query: MemoryQuery):
        conditions: List[str] = []
        params: List[Any] = []

        if query.agent_id:
            conditions.append("agent_id = ?")
            params.append(query.agent_id)

        if query.session_id:
            conditions.append("session_id = ?")
            params.append(query.session_id)

        if query.type:
            conditions.append("type = ?")
            params.append(query.type)

        if query.start_time is not None:
            conditions.append("timestamp >= ?")
            params.append(format_timestamp(query.start_time))

        if query.end_time is not None:
            conditions.append("timestamp <= ?")
            params.append(format_timestamp(query.end_time))

        if query.search:
            pattern = f"%{escape_like(query.search)}%"
            conditions.append("(content LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])

        if query.tags:
            placeholders = ", ".join("?" for _ in query.tags)
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(memory_entries.tags) "
                f"WHERE json_each.value IN ({placeholders}))"
            )
            params.extend(query.tags)

        if query.namespace:
            conditions.append("json_extract(metadata, '$.namespace') = ?")
            params.append(query.namespace)

        sql = "SELECT * FROM memory_entries"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        sql += " ORDER BY timestamp DESC, id DESC"

        if (query.limit or 0) < 0 or (query.offset or 0) < 0:
            raise ValueError("limit and offset must be non-negative")

        # Zero means unset. SQLite only accepts OFFSET together with LIMIT; -1 is unbounded
        if query.limit or query.offset:
            sql += " LIMIT ? OFFSET ?"
            params.append(query.limit or -1)
            params.append(query.offset or 0)

        return sql, params

    async def get_all_entries(self) -> List[MemoryEntry]:
        """Return every entry, newest first."""
        return await self.query(MemoryQuery())

    async def count_entries(self) -> int:
        try:
            async with self._connection() as conn:
                row = await conn.fetchone("SELECT COUNT(*) AS count FROM memory_entries")
            return int(row["count"])
        except MemoryBackendError:
            raise
        except Exception as e:
            raise StoreError("Failed to count entries", {"error": str(e)}) from e

    # Health and Maintenance
    async def get_health_status(self) -> Dict[str, Any]:
        """Report connectivity, entry count, database size and pool usage."""
        if self._pool is None:
            return {"healthy": False, "error": "Database not initialized"}

        try:
            async with self._pool.acquire() as conn:
                await conn.fetchone("SELECT 1")
                count_row = await conn.fetchone("SELECT COUNT(*) AS count FROM memory_entries")
                page_count = await conn.fetchone("PRAGMA page_count")
                page_size = await conn.fetchone("PRAGMA page_size")

            pool_metrics = self._pool.get_metrics()
            return {
                "healthy": True,
                "metrics": {
                    "entry_count": int(count_row["count"]),
                    "table_size_bytes": int(page_count[0]) * int(page_size[0]),
                    "total_connections": pool_metrics.total_connections,
                    "idle_connections": pool_metrics.idle_connections,
                    "waiting_count": pool_metrics.waiting_requests,
                },
            }
        except Exception as e:
            return {"healthy": False, "error": str(e) or type(e).__name__}

    async def perform_maintenance(self) -> None:
        """Refresh statistics and release free pages back to the filesystem."""
        try:
            async with self._connection(MaintenanceError) as conn:
                await conn.execute("ANALYZE memory_entries")
                await conn.fetchall("PRAGMA incremental_vacuum")
                await conn.commit()
        except MaintenanceError:
            raise
        except Exception as e:
            self.logger.error(f"Database maintenance failed: {e}")
            raise MaintenanceError("Failed to perform maintenance", {"error": str(e)}) from e

        self.logger.info("Database maintenance completed")
