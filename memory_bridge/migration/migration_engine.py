"""
Batched migration of memory entries from a source reader into a backend.
"""

import asyncio
import time
import logging
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from memory_bridge.codec.entry_codec import EntryCodec, ValidationError
from memory_bridge.model.memory_entry import MemoryEntry
from memory_bridge.model.migration_stats import BatchStats, MigrationStats
from memory_bridge.migration.source_reader import SourceReaderInterface
from memory_bridge.performance.connection_pool import PoolExhaustedError
from memory_bridge.storage.interfaces.memory_backend_interface import (
    InitializationError,
    MemoryBackendInterface,
    StoreError,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class MigrationState(Enum):
    """Migration engine states."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationError(Exception):
    """
    Raised when a migration run cannot continue.

    ``stats`` holds the counters accumulated up to the failure; batches
    written before it stay committed in the target.
    """

    def __init__(
        self,
        message: str,
        stats: Optional[MigrationStats] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.stats = stats
        self.cause = cause


class NotInitializedError(MigrationError):
    """Raised when migrate() is called before initialize()."""
    pass


class MigrationEngine:
    """
    Moves every source row into a target backend, one batch at a time.

    Batches are read, converted and written strictly in sequence. Source rows
    are paged with LIMIT/OFFSET ordered by timestamp, so rows inserted into
    or deleted from the source while a run is in progress may be skipped or
    read twice.
    """

    def __init__(
        self,
        source: SourceReaderInterface,
        target: MemoryBackendInterface,
        batch_size: int = DEFAULT_BATCH_SIZE,
        codec: Optional[EntryCodec] = None,
        progress_callback: Optional[Callable[[int, int], Any]] = None,
    ):
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")

        self.source = source
        self.target = target
        self.batch_size = batch_size
        self.codec = codec or EntryCodec()
        self.progress_callback = progress_callback
        self.state = MigrationState.UNINITIALIZED
        self._ready = False

    async def initialize(self) -> None:
        """
        Open the source and connect to the target without touching its schema.

        Raises:
            InitializationError: If either side cannot be opened
        """
        try:
            await self.source.initialize()
            await self.target.initialize(create_schema=False)
        except Exception as e:
            self.state = MigrationState.FAILED
            logger.error(f"Failed to initialize migration: {e}")
            if isinstance(e, InitializationError):
                raise
            raise InitializationError("Failed to initialize migration", {"error": str(e)}) from e

        self._ready = True
        self.state = MigrationState.INITIALIZED
        logger.info("Migration engine initialized")

    async def shutdown(self) -> None:
        """Close source and target. Safe to call more than once."""
        self._ready = False
        try:
            await self.source.close()
        finally:
            await self.target.shutdown()

    async def migrate(self, dry_run: bool = False) -> MigrationStats:
        """
        Run one migration pass.

        Args:
            dry_run: Validate rows only; the target is neither created nor written

        Returns:
            Counters for the run

        Raises:
            NotInitializedError: If initialize() has not completed
            MigrationError: If counting, schema creation or a page fetch fails,
                or if anything else goes wrong mid-run
        """
        if not self._ready:
            raise NotInitializedError("Migration engine not initialized")
        if self.state == MigrationState.RUNNING:
            raise MigrationError("A migration is already running")

        start_time = time.monotonic()
        stats = MigrationStats()
        self.state = MigrationState.RUNNING
        logger.info(f"Starting migration (dry run: {dry_run})")

        try:
            stats.total_entries = await self._step(
                "Failed to count source entries", stats, self.source.count()
            )
            logger.info(f"Found {stats.total_entries} entries to migrate")

            if stats.total_entries > 0:
                if not dry_run:
                    await self._step(
                        "Failed to create target schema", stats, self.target.create_schema()
                    )
                await self._migrate_batches(stats, dry_run)

        except MigrationError as e:
            stats.duration = self._elapsed_ms(start_time)
            self.state = MigrationState.FAILED
            logger.error(f"Migration failed: {e}")
            raise
        except Exception as e:
            stats.duration = self._elapsed_ms(start_time)
            self.state = MigrationState.FAILED
            logger.error(f"Migration failed unexpectedly: {e}")
            raise MigrationError(f"Migration failed: {e}", stats, e) from e

        stats.duration = self._elapsed_ms(start_time)
        self.state = MigrationState.COMPLETED
        logger.info(f"Migration completed in {stats.duration:.0f}ms: {stats.to_dict()}")
        return stats

    async def _migrate_batches(self, stats: MigrationStats, dry_run: bool):
        """Page through the source until a short or empty page is returned."""
        offset = 0
        while True:
            rows = await self._step(
                f"Failed to read source page at offset {offset}",
                stats,
                self.source.page("timestamp", self.batch_size, offset),
            )
            if not rows:
                break

            if dry_run:
                batch_stats = self._validate_batch(rows)
            else:
                batch_stats = await self._migrate_batch(rows, stats)
            stats.add_batch(batch_stats)

            processed = stats.migrated_entries + stats.skipped_entries + stats.errors
            logger.info(f"Migrated {stats.migrated_entries}/{stats.total_entries} entries")
            self._report_progress(processed, stats.total_entries)

            if len(rows) < self.batch_size:
                break
            offset += self.batch_size

    def _validate_batch(self, rows: List[Dict[str, Any]]) -> BatchStats:
        batch_stats = BatchStats()
        for row in rows:
            try:
                self.codec.validate(row)
                batch_stats.migrated_entries += 1
            except ValidationError as e:
                logger.warning(f"Would skip entry {row.get('id')}: {e}")
                batch_stats.skipped_entries += 1
        return batch_stats

    async def _migrate_batch(self, rows: List[Dict[str, Any]], stats: MigrationStats) -> BatchStats:
        batch_stats = BatchStats()
        entries: List[MemoryEntry] = []

        for row in rows:
            try:
                entries.append(self.codec.convert(row))
            except ValidationError as e:
                logger.warning(f"Skipping entry {row.get('id')}: {e}")
                batch_stats.skipped_entries += 1

        if not entries:
            return batch_stats

        try:
            await self.target.store_batch(entries)
            batch_stats.migrated_entries = len(entries)
        except StoreError as e:
            if isinstance(e.__cause__, (PoolExhaustedError, asyncio.TimeoutError)):
                stats.add_batch(batch_stats)
                raise MigrationError("Target connection pool exhausted", stats, e) from e
            logger.error(f"Failed to insert batch of {len(entries)} entries: {e}")
            batch_stats.errors = len(entries)

        return batch_stats

    async def _step(self, message: str, stats: MigrationStats, awaitable):
        try:
            return await awaitable
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(f"{message}: {e}", stats, e) from e

    def _report_progress(self, processed: int, total: int):
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(processed, total)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    @staticmethod
    def _elapsed_ms(start_time: float) -> float:
        return (time.monotonic() - start_time) * 1000.0
