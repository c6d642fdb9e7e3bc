"""
Bounded connection pooling for database backends.
"""

import asyncio
import time
import weakref
from typing import Any, Optional, List, AsyncGenerator, Protocol, Sequence
from dataclasses import dataclass
from enum import Enum
from contextlib import asynccontextmanager
import logging

import aiosqlite

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection states."""

    IDLE = "idle"
    ACTIVE = "active"
    BROKEN = "broken"
    CLOSED = "closed"


@dataclass
class PoolConfig:
    """Connection pool configuration."""

    min_connections: int = 1
    max_connections: int = 10
    connection_timeout: float = 30.0
    idle_timeout: float = 300.0  # 5 minutes
    max_lifetime: float = 3600.0  # 1 hour
    health_check_interval: float = 60.0
    enable_monitoring: bool = True


@dataclass
class ConnectionMetrics:
    """Connection pool metrics."""

    total_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0
    broken_connections: int = 0
    waiting_requests: int = 0
    connections_created: int = 0
    connections_closed: int = 0
    connection_errors: int = 0
    avg_connection_time: float = 0.0


class PoolExhaustedError(RuntimeError):
    """Raised when no connection frees up within the configured timeout."""
    pass


class Connection:
    """Wrapper for database connections with metadata."""

    def __init__(self, connection: Any, pool: "ConnectionPool"):
        self.connection = connection
        self.pool = weakref.ref(pool)
        self.state = ConnectionState.IDLE
        self.created_at = time.time()
        self.last_used = self.created_at
        self.use_count = 0

    def _check_active(self):
        if self.state != ConnectionState.ACTIVE:
            raise RuntimeError(f"Connection is not active: {self.state}")
        self.last_used = time.time()
        self.use_count += 1

    async def _mark_if_broken(self):
        """Flag the connection as broken if it no longer answers a trivial query."""
        pool = self.pool()
        if pool is None or not await pool.factory.validate_connection(self.connection):
            self.state = ConnectionState.BROKEN

    async def execute(self, query: str, parameters: Sequence[Any] = ()):
        """Execute a statement and return its cursor."""
        self._check_active()
        try:
            return await self.connection.execute(query, parameters)
        except Exception:
            await self._mark_if_broken()
            raise

    async def executemany(self, query: str, parameters: Sequence[Sequence[Any]]):
        """Execute a statement once for every parameter set."""
        self._check_active()
        try:
            return await self.connection.executemany(query, parameters)
        except Exception:
            await self._mark_if_broken()
            raise

    async def fetchall(self, query: str, parameters: Sequence[Any] = ()) -> List[Any]:
        """Execute a query and return all rows."""
        cursor = await self.execute(query, parameters)
        try:
            return list(await cursor.fetchall())
        finally:
            await cursor.close()

    async def fetchone(self, query: str, parameters: Sequence[Any] = ()) -> Optional[Any]:
        """Execute a query and return the first row, if any."""
        cursor = await self.execute(query, parameters)
        try:
            return await cursor.fetchone()
        finally:
            await cursor.close()

    async def commit(self):
        await self.connection.commit()

    async def rollback(self):
        await self.connection.rollback()

    async def close(self):
        """Close the connection."""
        if self.state != ConnectionState.CLOSED:
            try:
                await self.connection.close()
            finally:
                self.state = ConnectionState.CLOSED

    def is_expired(self, max_lifetime: float, idle_timeout: float) -> bool:
        """Check if connection is expired."""
        now = time.time()
        lifetime_expired = (now - self.created_at) > max_lifetime
        idle_expired = (now - self.last_used) > idle_timeout
        return lifetime_expired or (self.state == ConnectionState.IDLE and idle_expired)

    def is_healthy(self) -> bool:
        """Check if connection is healthy."""
        return self.state in (ConnectionState.IDLE, ConnectionState.ACTIVE)


class ConnectionFactory(Protocol):
    """Protocol for connection factories."""

    async def create_connection(self) -> Any:
        """Create a new connection."""
        ...

    async def validate_connection(self, connection: Any) -> bool:
        """Validate if connection is healthy."""
        ...


class ConnectionPool:
    """
    Bounded connection pool with monitoring.

    At most ``max_connections`` connections are borrowed at once; further
    callers wait (and are counted as waiting) for up to
    ``connection_timeout`` seconds before ``PoolExhaustedError`` is raised.
    Must be created from within a running event loop.
    """

    def __init__(self, factory: ConnectionFactory, config: PoolConfig):
        self.factory = factory
        self.config = config
        self.metrics = ConnectionMetrics()

        self._connections: List[Connection] = []
        self._semaphore = asyncio.Semaphore(config.max_connections)
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._closed = False
        self._monitor_task: Optional[asyncio.Task] = None

        # Start monitoring if enabled
        if config.enable_monitoring:
            self._start_monitoring()

    @property
    def closed(self) -> bool:
        return self._closed

    def _start_monitoring(self):
        """Start connection pool monitoring."""

        async def monitor_loop():
            while not self._closed:
                try:
                    await asyncio.sleep(self.config.health_check_interval)
                    await self._health_check()
                    await self._cleanup_expired()
                    self._update_metrics()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Connection pool monitoring error: {e}")

        self._monitor_task = asyncio.create_task(monitor_loop())

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Acquire a connection from the pool."""
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        self._waiting += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(), timeout=self.config.connection_timeout
            )
        except asyncio.TimeoutError:
            raise PoolExhaustedError(
                f"No connection available within {self.config.connection_timeout}s "
                f"(max_connections={self.config.max_connections})"
            )
        finally:
            self._waiting -= 1

        try:
            connection = await self._get_connection()
            try:
                yield connection
            finally:
                await self._return_connection(connection)
        finally:
            self._semaphore.release()

    async def _get_connection(self) -> Connection:
        """Get an available connection."""
        start_time = time.time()

        async with self._lock:
            # Try to find an idle connection
            for conn in self._connections:
                if conn.state == ConnectionState.IDLE:
                    conn.state = ConnectionState.ACTIVE
                    return conn

            # Create new connection if under limit
            if len(self._connections) < self.config.max_connections:
                try:
                    raw_conn = await asyncio.wait_for(
                        self.factory.create_connection(), timeout=self.config.connection_timeout
                    )
                except Exception as e:
                    self.metrics.connection_errors += 1
                    logger.error(f"Failed to create connection: {e}")
                    raise

                connection = Connection(raw_conn, self)
                connection.state = ConnectionState.ACTIVE
                self._connections.append(connection)

                self.metrics.connections_created += 1
                self.metrics.avg_connection_time = (
                    self.metrics.avg_connection_time + (time.time() - start_time)
                ) / 2

                return connection

            raise PoolExhaustedError("No connections available and pool is at maximum capacity")

    async def _return_connection(self, connection: Connection):
        """Return connection to the pool."""
        async with self._lock:
            if connection.state == ConnectionState.BROKEN or self._closed:
                await self._remove_connection(connection)
            else:
                connection.state = ConnectionState.IDLE

    async def _remove_connection(self, connection: Connection):
        """Remove connection from pool."""
        if connection in self._connections:
            self._connections.remove(connection)
            self.metrics.connections_closed += 1
        await connection.close()

    async def _health_check(self):
        """Perform health check on idle connections."""
        async with self._lock:
            unhealthy_connections = []

            for conn in self._connections:
                if not conn.is_healthy():
                    unhealthy_connections.append(conn)
                elif conn.state == ConnectionState.IDLE:
                    try:
                        if not await self.factory.validate_connection(conn.connection):
                            conn.state = ConnectionState.BROKEN
                            unhealthy_connections.append(conn)
                    except Exception:
                        conn.state = ConnectionState.BROKEN
                        unhealthy_connections.append(conn)

            for conn in unhealthy_connections:
                await self._remove_connection(conn)

    async def _cleanup_expired(self):
        """Clean up expired connections."""
        async with self._lock:
            expired_connections = [
                conn
                for conn in self._connections
                if conn.state == ConnectionState.IDLE
                and conn.is_expired(self.config.max_lifetime, self.config.idle_timeout)
            ]

            for conn in expired_connections:
                await self._remove_connection(conn)

            await self._ensure_minimum_connections()

    async def _ensure_minimum_connections(self):
        """Ensure minimum number of connections."""
        current_count = len([c for c in self._connections if c.is_healthy()])

        if current_count < self.config.min_connections:
            needed = self.config.min_connections - current_count
            for _ in range(needed):
                try:
                    raw_conn = await self.factory.create_connection()
                    connection = Connection(raw_conn, self)
                    self._connections.append(connection)
                    self.metrics.connections_created += 1
                except Exception as e:
                    logger.error(f"Failed to create minimum connection: {e}")
                    break

    def _update_metrics(self):
        """Update connection metrics."""
        self.metrics.total_connections = len(self._connections)
        self.metrics.active_connections = len(
            [c for c in self._connections if c.state == ConnectionState.ACTIVE]
        )
        self.metrics.idle_connections = len(
            [c for c in self._connections if c.state == ConnectionState.IDLE]
        )
        self.metrics.broken_connections = len(
            [c for c in self._connections if c.state == ConnectionState.BROKEN]
        )
        self.metrics.waiting_requests = self._waiting

    def get_metrics(self) -> ConnectionMetrics:
        """Get pool metrics."""
        self._update_metrics()
        return self.metrics

    async def close(self):
        """Close the connection pool."""
        if self._closed:
            return
        self._closed = True

        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            for connection in self._connections:
                if connection.state == ConnectionState.ACTIVE:
                    # Closed by _return_connection once its borrower finishes
                    continue
                await connection.close()
            self._connections = [
                c for c in self._connections if c.state == ConnectionState.ACTIVE
            ]


class SQLiteConnectionFactory:
    """Connection factory for SQLite."""

    def __init__(self, database_path: str, busy_timeout_ms: int = 5000, **kwargs):
        self.database_path = database_path
        self.busy_timeout_ms = busy_timeout_ms
        self.kwargs = kwargs

    async def create_connection(self) -> Any:
        """Create SQLite connection with per-connection pragmas applied."""
        connection = await aiosqlite.connect(self.database_path, **self.kwargs)
        try:
            connection.row_factory = aiosqlite.Row
            # Foreign key enforcement is a per-connection setting in SQLite
            await connection.execute("PRAGMA foreign_keys = ON")
            await connection.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        except Exception:
            await connection.close()
            raise
        return connection

    async def validate_connection(self, connection: Any) -> bool:
        """Validate SQLite connection."""
        try:
            await connection.execute("SELECT 1")
            return True
        except Exception:
            return False
