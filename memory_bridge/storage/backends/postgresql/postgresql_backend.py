"""
PostgreSQL storage implementation for memory entries.

Entries live in a dedicated schema (``memory_bridge`` unless configured
otherwise) with JSONB columns for context, tags and metadata. All access goes
through one asyncpg pool owned by the backend instance.
"""

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Union

import asyncpg

from memory_bridge.codec.entry_codec import ENTRY_COLUMNS, entry_to_row, row_to_dict, row_to_entry
from memory_bridge.model.memory_entry import MemoryEntry, MemoryQuery
from memory_bridge.storage.interfaces.memory_backend_interface import (
    InitializationError,
    MaintenanceError,
    MemoryBackendError,
    MemoryBackendInterface,
    StoreError,
    escape_like,
)

DEFAULT_SCHEMA = "memory_bridge"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PASSWORD = re.compile(r":[^:@]+@")

_UPDATE_SET = """
        agent_id = EXCLUDED.agent_id,
        session_id = EXCLUDED.session_id,
        type = EXCLUDED.type,
        content = EXCLUDED.content,
        context = EXCLUDED.context,
        timestamp = EXCLUDED.timestamp,
        tags = EXCLUDED.tags,
        version = EXCLUDED.version,
        parent_id = EXCLUDED.parent_id,
        metadata = EXCLUDED.metadata,
        updated_at = NOW()
"""


def mask_connection_string(connection_string: str) -> str:
    """Replace the password of a connection URL with ``****`` for logging."""
    return _PASSWORD.sub(":****@", connection_string, count=1)


class PostgreSQLBackend(MemoryBackendInterface):
    """
    PostgreSQL-based implementation of the MemoryBackendInterface.

    Pool defaults: at most 20 connections, idle connections released after
    30 seconds, 2 second connect timeout.
    """

    def __init__(
        self,
        connection_string: str,
        schema: str = DEFAULT_SCHEMA,
        max_connections: int = 20,
        min_connections: int = 1,
        idle_timeout: float = 30.0,
        connection_timeout: float = 2.0,
        pool: Optional[Any] = None,
    ):
        """
        Initialize PostgreSQLBackend.

        Args:
            connection_string: libpq-style URL, e.g. ``postgresql://user:pw@host/db``
            schema: Schema holding the tables
            max_connections: Upper bound of the pool
            min_connections: Connections opened eagerly
            idle_timeout: Seconds before an idle connection is closed
            connection_timeout: Seconds to wait for a new connection
            pool: Pre-built pool to use instead of creating one
        """
        if not _IDENTIFIER.match(schema):
            raise ValueError(f"Invalid schema name: {schema!r}")

        self.connection_string = connection_string
        self.schema = schema
        self.max_connections = max_connections
        self.min_connections = min(min_connections, max_connections)
        self.idle_timeout = idle_timeout
        self.connection_timeout = connection_timeout
        self.logger = logging.getLogger(__name__)

        self._pool = pool
        self._initialized = False
        self._waiting = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def table(self) -> str:
        return f"{self.schema}.memory_entries"

    # Lifecycle
    async def initialize(self, create_schema: bool = True) -> None:
        if self._initialized:
            return

        self.logger.info(
            f"Initializing PostgreSQL backend: {mask_connection_string(self.connection_string)}"
        )

        try:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self.connection_string,
                    min_size=self.min_connections,
                    max_size=self.max_connections,
                    max_inactive_connection_lifetime=self.idle_timeout,
                    timeout=self.connection_timeout,
                )

            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")

            self._initialized = True

            if create_schema:
                await self.create_schema()

            self.logger.info("PostgreSQL backend initialized")

        except Exception as e:
            self.logger.error(f"Failed to initialize PostgreSQL backend: {e}")
            await self._close_pool()
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(
                "Failed to initialize PostgreSQL backend", {"error": str(e)}
            ) from e

    async def create_schema(self) -> None:
        """Create the schema, tables and indexes if they don't exist."""
        if self._pool is None:
            raise InitializationError("Database not initialized")

        try:
            async with self._acquire() as conn:
                async with conn.transaction():
                    await conn.execute(self._tables_ddl())
                    for statement in self._index_ddl():
                        await conn.execute(statement)
        except Exception as e:
            raise InitializationError("Failed to create schema", {"error": str(e)}) from e

        self.logger.debug(f"PostgreSQL schema {self.schema} ensured")

    def _tables_ddl(self) -> str:
        s = self.schema
        return f"""
            CREATE SCHEMA IF NOT EXISTS {s};

            CREATE TABLE IF NOT EXISTS {s}.memory_entries (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                context JSONB NOT NULL DEFAULT '{{}}',
                timestamp TIMESTAMPTZ NOT NULL,
                tags JSONB NOT NULL DEFAULT '[]',
                version INTEGER NOT NULL DEFAULT 1,
                parent_id TEXT,
                metadata JSONB,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT fk_memory_entries_parent
                    FOREIGN KEY (parent_id)
                    REFERENCES {s}.memory_entries (id)
                    ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS {s}.swarm_metadata (
                id TEXT PRIMARY KEY,
                swarm_id TEXT NOT NULL,
                agent_id TEXT,
                metadata_type TEXT NOT NULL,
                data JSONB NOT NULL DEFAULT '{{}}',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS {s}.worktree_sessions (
                id TEXT PRIMARY KEY,
                session_name TEXT NOT NULL,
                workspace_path TEXT,
                agent_assignments JSONB NOT NULL DEFAULT '{{}}',
                status TEXT NOT NULL DEFAULT 'active',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                last_activity TIMESTAMPTZ DEFAULT NOW()
            );
        """

    def _index_ddl(self) -> List[str]:
        s = self.schema
        return [
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_agent_id ON {s}.memory_entries (agent_id)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_session_id ON {s}.memory_entries (session_id)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_type ON {s}.memory_entries (type)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_timestamp ON {s}.memory_entries (timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_parent_id ON {s}.memory_entries (parent_id)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_tags ON {s}.memory_entries USING GIN (tags)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_context ON {s}.memory_entries USING GIN (context)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_metadata ON {s}.memory_entries USING GIN (metadata)",
            f"CREATE INDEX IF NOT EXISTS idx_memory_entries_content_search ON {s}.memory_entries "
            "USING GIN (to_tsvector('english', content))",
            f"CREATE INDEX IF NOT EXISTS idx_swarm_metadata_swarm_id ON {s}.swarm_metadata (swarm_id)",
            f"CREATE INDEX IF NOT EXISTS idx_swarm_metadata_agent_id ON {s}.swarm_metadata (agent_id)",
            f"CREATE INDEX IF NOT EXISTS idx_swarm_metadata_type ON {s}.swarm_metadata (metadata_type)",
            f"CREATE INDEX IF NOT EXISTS idx_swarm_metadata_data ON {s}.swarm_metadata USING GIN (data)",
            f"CREATE INDEX IF NOT EXISTS idx_worktree_sessions_name ON {s}.worktree_sessions (session_name)",
            f"CREATE INDEX IF NOT EXISTS idx_worktree_sessions_status ON {s}.worktree_sessions (status)",
            f"CREATE INDEX IF NOT EXISTS idx_worktree_sessions_activity "
            f"ON {s}.worktree_sessions (last_activity)",
        ]

    async def shutdown(self) -> None:
        if self._pool is None:
            return
        self.logger.info("Shutting down PostgreSQL backend")
        await self._close_pool()

    async def _close_pool(self) -> None:
        pool, self._pool = self._pool, None
        self._initialized = False
        if pool is not None:
            await pool.close()

    @asynccontextmanager
    async def _acquire(self) -> AsyncGenerator[Any, None]:
        """Borrow a connection, counting the caller as waiting until it gets one."""
        self._waiting += 1
        try:
            ctx = self._pool.acquire(timeout=self.connection_timeout)
            conn = await ctx.__aenter__()
        finally:
            self._waiting -= 1
        try:
            yield conn
        except BaseException as e:
            await ctx.__aexit__(type(e), e, e.__traceback__)
            raise
        else:
            await ctx.__aexit__(None, None, None)

    @asynccontextmanager
    async def _connection(self) -> AsyncGenerator[Any, None]:
        if not self._initialized or self._pool is None:
            raise StoreError("Database not initialized")
        async with self._acquire() as conn:
            yield conn

    # Entry Operations
    async def store(self, entry: MemoryEntry) -> None:
        sql = f"""
            INSERT INTO {self.table} ({", ".join(ENTRY_COLUMNS)})
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8::jsonb, $9, $10, $11::jsonb)
            ON CONFLICT (id) DO UPDATE SET {_UPDATE_SET}
        """
        try:
            async with self._connection() as conn:
                await conn.execute(sql, *entry_to_row(entry))
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error storing entry {entry.id}: {e}")
            raise StoreError("Failed to store entry", {"id": entry.id, "error": str(e)}) from e

    async def store_batch(self, entries: Sequence[MemoryEntry]) -> None:
        """
        Upsert a batch with a single statement.

        The rows travel as one array parameter per column and are expanded
        with ``unnest``, so the statement size does not grow with the batch.
        A repeated id within the batch keeps its last occurrence, since one
        ``ON CONFLICT`` statement cannot touch the same row twice.
        """
        if not entries:
            return

        unique: Dict[str, MemoryEntry] = {}
        for entry in entries:
            unique.pop(entry.id, None)
            unique[entry.id] = entry
        rows = [entry_to_row(entry) for entry in unique.values()]
        columns = [list(values) for values in zip(*rows)]

        sql = f"""
            INSERT INTO {self.table} ({", ".join(ENTRY_COLUMNS)})
            SELECT id, agent_id, session_id, type, content, context::jsonb, timestamp,
                   tags::jsonb, version, parent_id, metadata::jsonb
            FROM unnest(
                $1::text[], $2::text[], $3::text[], $4::text[], $5::text[], $6::text[],
                $7::timestamptz[], $8::text[], $9::int[], $10::text[], $11::text[]
            ) AS batch ({", ".join(ENTRY_COLUMNS)})
            ON CONFLICT (id) DO UPDATE SET {_UPDATE_SET}
        """
        try:
            async with self._connection() as conn:
                await conn.execute(sql, *columns)
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error storing batch of {len(rows)} entries: {e}")
            raise StoreError(
                "Failed to store batch", {"size": len(rows), "error": str(e)}
            ) from e

    async def retrieve(self, entry_id: str) -> Optional[MemoryEntry]:
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {self.table} WHERE id = $1", entry_id)
            if row is None:
                return None
            return row_to_entry(row_to_dict(row))
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error retrieving entry {entry_id}: {e}")
            raise StoreError("Failed to retrieve entry", {"id": entry_id, "error": str(e)}) from e

    async def delete(self, entry_id: str) -> None:
        try:
            async with self._connection() as conn:
                await conn.execute(f"DELETE FROM {self.table} WHERE id = $1", entry_id)
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error deleting entry {entry_id}: {e}")
            raise StoreError("Failed to delete entry", {"id": entry_id, "error": str(e)}) from e

    # Query Operations
    async def query(self, query: Union[MemoryQuery, Dict[str, Any]]) -> List[MemoryEntry]:
        query = self._coerce_query(query)
        sql, params = self._build_query(query)

        try:
            async with self._connection() as conn:
                rows = await conn.fetch(sql, *params)
            return [row_to_entry(row_to_dict(row)) for row in rows]
        except MemoryBackendError:
            raise
        except Exception as e:
            self.logger.error(f"Error querying entries: {e}")
            raise StoreError("Failed to query entries", {"error": str(e)}) from e

    def _build_query(self, query: MemoryQuery):
        conditions: List[str] = []
        params: List[Any] = []

        def param(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if query.agent_id:
            conditions.append(f"agent_id = {param(query.agent_id)}")

        if query.session_id:
            conditions.append(f"session_id = {param(query.session_id)}")

        if query.type:
            conditions.append(f"type = {param(query.type)}")

        if query.start_time is not None:
            conditions.append(f"timestamp >= {param(query.start_time)}")

        if query.end_time is not None:
            conditions.append(f"timestamp <= {param(query.end_time)}")

        if query.search:
            pattern = param(f"%{escape_like(query.search)}%")
            conditions.append(f"(content ILIKE {pattern} OR tags::text ILIKE {pattern})")

        if query.tags:
            conditions.append(f"tags ?| {param(list(query.tags))}::text[]")

        if query.namespace:
            conditions.append(f"metadata->>'namespace' = {param(query.namespace)}")

        sql = f"SELECT * FROM {self.table}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        sql += " ORDER BY timestamp DESC, id DESC"

        if (query.limit or 0) < 0 or (query.offset or 0) < 0:
            raise ValueError("limit and offset must be non-negative")

        # Zero means unset
        if query.limit:
            sql += f" LIMIT {param(query.limit)}"

        if query.offset:
            sql += f" OFFSET {param(query.offset)}"

        return sql, params

    async def get_all_entries(self) -> List[MemoryEntry]:
        return await self.query(MemoryQuery())

    async def count_entries(self) -> int:
        try:
            async with self._connection() as conn:
                return int(await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}"))
        except MemoryBackendError:
            raise
        except Exception as e:
            raise StoreError("Failed to count entries", {"error": str(e)}) from e

    # Health and Maintenance
    async def get_health_status(self) -> Dict[str, Any]:
        if not self._initialized or self._pool is None:
            return {"healthy": False, "error": "Database not initialized"}

        try:
            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")
                entry_count = await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")
                table_size = await conn.fetchval(
                    "SELECT pg_total_relation_size($1::regclass)", self.table
                )

            return {
                "healthy": True,
                "metrics": {
                    "entry_count": int(entry_count),
                    "table_size_bytes": int(table_size),
                    "total_connections": self._pool.get_size(),
                    "idle_connections": self._pool.get_idle_size(),
                    "waiting_count": self._waiting,
                },
            }
        except Exception as e:
            return {"healthy": False, "error": str(e) or type(e).__name__}

    async def perform_maintenance(self) -> None:
        """Run ANALYZE and a plain (non-FULL) VACUUM, neither of which blocks CRUD."""
        if not self._initialized or self._pool is None:
            raise MaintenanceError("Database not initialized")

        try:
            async with self._acquire() as conn:
                await conn.execute(f"ANALYZE {self.table}")
                await conn.execute(f"VACUUM (ANALYZE) {self.table}")
        except Exception as e:
            self.logger.error(f"Database maintenance failed: {e}")
            raise MaintenanceError("Failed to perform maintenance", {"error": str(e)}) from e

        self.logger.info("Database maintenance completed")
