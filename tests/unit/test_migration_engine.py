"""
Tests for the batched migration engine.
"""
import aiosqlite
import pytest
from unittest.mock import MagicMock

from memory_bridge.migration.migration_engine import (
    MigrationEngine,
    MigrationError,
    MigrationState,
    NotInitializedError,
)
from memory_bridge.migration.source_reader import SourceReaderInterface, SqliteSourceReader
from memory_bridge.performance.connection_pool import PoolConfig, PoolExhaustedError
from memory_bridge.storage.backends.sqlite import SqliteBackend
from memory_bridge.storage.interfaces.memory_backend_interface import (
    InitializationError,
    MemoryBackendInterface,
    StoreError,
)
from tests.factories import create_source_db, make_row


class ListSource(SourceReaderInterface):
    """In-memory source serving rows in the order given."""

    def __init__(self, rows, fail_count=False, fail_at_offset=None):
        self.rows = list(rows)
        self.fail_count = fail_count
        self.fail_at_offset = fail_at_offset
        self.pages = []
        self.closed = False

    async def initialize(self):
        pass

    async def count(self):
        if self.fail_count:
            raise OSError("disk I/O error")
        return len(self.rows)

    async def page(self, order_key, limit, offset):
        self.pages.append((order_key, limit, offset))
        if offset == self.fail_at_offset:
            raise OSError("database disk image is malformed")
        return self.rows[offset:offset + limit]

    async def close(self):
        self.closed = True


def make_target():
    return MagicMock(spec=MemoryBackendInterface)


def stored_batch_sizes(target):
    return [len(c.args[0]) for c in target.store_batch.await_args_list]


async def ready_engine(source, target=None, **kwargs):
    engine = MigrationEngine(source, target or make_target(), **kwargs)
    await engine.initialize()
    return engine


class TestMigrationEngineSetup:
    """Test construction and initialization."""

    @pytest.mark.parametrize("batch_size", [0, -1, True, 1.5, "10", None])
    def test_invalid_batch_size(self, batch_size):
        with pytest.raises(ValueError):
            MigrationEngine(ListSource([]), make_target(), batch_size=batch_size)

    @pytest.mark.asyncio
    async def test_initialize_leaves_target_schema_alone(self):
        target = make_target()
        engine = await ready_engine(ListSource([]), target)

        target.initialize.assert_awaited_once_with(create_schema=False)
        assert engine.state == MigrationState.INITIALIZED

    @pytest.mark.asyncio
    async def test_initialize_failure(self):
        target = make_target()
        target.initialize.side_effect = OSError("connection refused")
        engine = MigrationEngine(ListSource([]), target)

        with pytest.raises(InitializationError):
            await engine.initialize()
        assert engine.state == MigrationState.FAILED

        with pytest.raises(NotInitializedError):
            await engine.migrate()

    @pytest.mark.asyncio
    async def test_migrate_before_initialize(self):
        engine = MigrationEngine(ListSource([make_row(1)]), make_target())
        with pytest.raises(NotInitializedError):
            await engine.migrate()

    @pytest.mark.asyncio
    async def test_second_run_while_running(self):
        engine = await ready_engine(ListSource([]))
        engine.state = MigrationState.RUNNING
        with pytest.raises(MigrationError):
            await engine.migrate()

    @pytest.mark.asyncio
    async def test_shutdown_closes_both_sides(self):
        source = ListSource([])
        target = make_target()
        engine = await ready_engine(source, target)

        await engine.shutdown()

        assert source.closed
        target.shutdown.assert_awaited_once()
        with pytest.raises(NotInitializedError):
            await engine.migrate()


class TestMigrationEngineBatches:
    """Test paging, batching and counters."""

    @pytest.mark.asyncio
    async def test_batches_of_configured_size(self):
        progress = []
        target = make_target()
        source = ListSource([make_row(i) for i in range(2500)])
        engine = await ready_engine(
            source, target, batch_size=1000, progress_callback=lambda done, total: progress.append((done, total))
        )

        stats = await engine.migrate()

        assert stored_batch_sizes(target) == [1000, 1000, 500]
        assert stats.total_entries == 2500
        assert stats.migrated_entries == 2500
        assert stats.skipped_entries == 0
        assert stats.errors == 0
        assert stats.duration >= 0
        assert progress == [(1000, 2500), (2000, 2500), (2500, 2500)]
        assert [offset for _, _, offset in source.pages] == [0, 1000, 2000]
        assert all(key == "timestamp" for key, _, _ in source.pages)
        target.create_schema.assert_awaited_once()
        assert engine.state == MigrationState.COMPLETED

    @pytest.mark.asyncio
    async def test_exact_multiple_stops_on_empty_page(self):
        target = make_target()
        source = ListSource([make_row(i) for i in range(20)])
        engine = await ready_engine(source, target, batch_size=10)

        stats = await engine.migrate()

        assert stored_batch_sizes(target) == [10, 10]
        assert [offset for _, _, offset in source.pages] == [0, 10, 20]
        assert stats.migrated_entries == 20

    @pytest.mark.asyncio
    async def test_invalid_rows_are_skipped(self):
        target = make_target()
        rows = [make_row(0), make_row(1, content=None), make_row(2, tags="{broken")]
        engine = await ready_engine(ListSource(rows), target)

        stats = await engine.migrate()

        assert stats.total_entries == 3
        assert stats.migrated_entries == 1
        assert stats.skipped_entries == 2
        entries = target.store_batch.await_args.args[0]
        assert [entry.id for entry in entries] == ["entry-00000"]

    @pytest.mark.asyncio
    async def test_batch_with_only_invalid_rows_is_not_written(self):
        target = make_target()
        engine = await ready_engine(ListSource([make_row(0, agent_id="")]), target)

        stats = await engine.migrate()

        target.store_batch.assert_not_awaited()
        assert stats.skipped_entries == 1

    @pytest.mark.asyncio
    async def test_empty_source(self):
        target = make_target()
        source = ListSource([])
        engine = await ready_engine(source, target)

        stats = await engine.migrate()

        assert stats.total_entries == 0
        assert stats.migrated_entries == 0
        assert source.pages == []
        target.create_schema.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dry_run_does_not_touch_target(self):
        target = make_target()
        rows = [make_row(i) for i in range(5)] + [make_row(5, content=None)]
        engine = await ready_engine(ListSource(rows), target, batch_size=4)

        stats = await engine.migrate(dry_run=True)

        assert stats.total_entries == 6
        assert stats.migrated_entries == 5
        assert stats.skipped_entries == 1
        target.create_schema.assert_not_awaited()
        target.store_batch.assert_not_awaited()
        target.store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_progress_callback_does_not_abort(self):
        def explode(done, total):
            raise RuntimeError("display closed")

        engine = await ready_engine(
            ListSource([make_row(i) for i in range(3)]), batch_size=2, progress_callback=explode
        )
        stats = await engine.migrate()
        assert stats.migrated_entries == 3


class TestMigrationEngineFailures:
    """Test aborted runs and counted batch failures."""

    @pytest.mark.asyncio
    async def test_count_failure(self):
        engine = await ready_engine(ListSource([make_row(0)], fail_count=True))

        with pytest.raises(MigrationError) as exc_info:
            await engine.migrate()

        assert exc_info.value.stats is not None
        assert isinstance(exc_info.value.cause, OSError)
        assert engine.state == MigrationState.FAILED

    @pytest.mark.asyncio
    async def test_schema_failure(self):
        target = make_target()
        target.create_schema.side_effect = InitializationError("permission denied")
        engine = await ready_engine(ListSource([make_row(0)]), target)

        with pytest.raises(MigrationError):
            await engine.migrate()
        target.store_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_page_failure_keeps_partial_stats(self):
        target = make_target()
        source = ListSource([make_row(i) for i in range(30)], fail_at_offset=10)
        engine = await ready_engine(source, target, batch_size=10)

        with pytest.raises(MigrationError) as exc_info:
            await engine.migrate()

        stats = exc_info.value.stats
        assert stats.total_entries == 30
        assert stats.migrated_entries == 10
        assert stats.duration >= 0
        assert stored_batch_sizes(target) == [10]

    @pytest.mark.asyncio
    async def test_failed_batch_is_counted_and_run_continues(self):
        target = make_target()
        target.store_batch.side_effect = [None, StoreError("duplicate key"), None]
        engine = await ready_engine(ListSource([make_row(i) for i in range(25)]), target, batch_size=10)

        stats = await engine.migrate()

        assert stats.migrated_entries == 15
        assert stats.errors == 10
        assert stats.migrated_entries + stats.skipped_entries + stats.errors == stats.total_entries
        assert engine.state == MigrationState.COMPLETED

    @pytest.mark.asyncio
    async def test_pool_exhaustion_aborts(self):
        error = StoreError("Failed to store batch")
        error.__cause__ = PoolExhaustedError("no connection available")
        target = make_target()
        target.store_batch.side_effect = [None, error]
        engine = await ready_engine(ListSource([make_row(i) for i in range(25)]), target, batch_size=10)

        with pytest.raises(MigrationError) as exc_info:
            await engine.migrate()

        assert exc_info.value.cause is error
        assert exc_info.value.stats.migrated_entries == 10
        assert target.store_batch.await_count == 2

    @pytest.mark.asyncio
    async def test_unconvertible_rows_are_skipped_and_engine_reusable(self):
        target = make_target()
        rows = [
            make_row(0),
            make_row(1, version=float("inf")),
            make_row(2, context="[" * 100000 + "]" * 100000),
        ]
        engine = await ready_engine(ListSource(rows), target)

        stats = await engine.migrate()

        assert stats.migrated_entries == 1
        assert stats.skipped_entries == 2
        assert engine.state == MigrationState.COMPLETED

        rerun = await engine.migrate()
        assert rerun.migrated_entries == 1
        assert rerun.skipped_entries == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run_and_engine_reusable(self):
        target = make_target()
        target.store_batch.side_effect = [RuntimeError("driver bug"), None]
        engine = await ready_engine(ListSource([make_row(i) for i in range(3)]), target)

        with pytest.raises(MigrationError) as exc_info:
            await engine.migrate()

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert exc_info.value.stats.total_entries == 3
        assert exc_info.value.stats.duration >= 0
        assert engine.state == MigrationState.FAILED

        stats = await engine.migrate()
        assert stats.migrated_entries == 3
        assert engine.state == MigrationState.COMPLETED


class TestMigrationEngineWithSqlite:
    """Run the engine against real SQLite source and target databases."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, tmp_path):
        rows = [make_row(i) for i in range(12)]
        rows.append(make_row(12, content=None))
        rows.append(make_row(13, parent_id="entry-00002"))
        source_path = create_source_db(tmp_path / "source.db", rows)
        target_path = tmp_path / "target.db"

        engine = MigrationEngine(
            SqliteSourceReader(str(source_path)),
            SqliteBackend(str(target_path), PoolConfig(max_connections=2, enable_monitoring=False)),
            batch_size=5,
        )
        await engine.initialize()
        try:
            stats = await engine.migrate()
            assert stats.total_entries == 14
            assert stats.migrated_entries == 13
            assert stats.skipped_entries == 1
            assert stats.errors == 0

            assert await engine.target.count_entries() == 13
            child = await engine.target.retrieve("entry-00013")
            assert child.parent_id == "entry-00002"
            assert child.context == {"step": 13}
            assert await engine.target.retrieve("entry-00012") is None

            rerun = await engine.migrate()
            assert rerun.migrated_entries == 13
            assert await engine.target.count_entries() == 13
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_dry_run_creates_no_tables(self, source_db, tmp_path):
        target_path = tmp_path / "target.db"
        engine = MigrationEngine(
            SqliteSourceReader(str(source_db)),
            SqliteBackend(str(target_path), PoolConfig(max_connections=2, enable_monitoring=False)),
        )
        await engine.initialize()
        try:
            stats = await engine.migrate(dry_run=True)
        finally:
            await engine.shutdown()

        assert stats.migrated_entries == 10
        async with aiosqlite.connect(str(target_path)) as conn:
            async with conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'") as cursor:
                assert await cursor.fetchall() == []
