"""
Tests for the SQLite memory backend.
"""
import asyncio
from datetime import timedelta

import pytest

from memory_bridge.model.memory_entry import MemoryQuery
from memory_bridge.performance.connection_pool import PoolConfig
from memory_bridge.storage.backends.sqlite import SqliteBackend
from memory_bridge.storage.interfaces.memory_backend_interface import (
    InitializationError,
    MaintenanceError,
    MemoryBackendInterface,
    StoreError,
)
from tests.factories import BASE_TIME, make_entry


def at(seconds: int):
    return BASE_TIME + timedelta(seconds=seconds)


class TestSqliteBackendLifecycle:
    """Test initialization and shutdown."""

    @pytest.mark.asyncio
    async def test_implements_interface(self, sqlite_backend):
        assert isinstance(sqlite_backend, MemoryBackendInterface)
        assert sqlite_backend.is_initialized

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, sqlite_backend):
        await sqlite_backend.initialize()
        await sqlite_backend.create_schema()
        assert await sqlite_backend.count_entries() == 0

    @pytest.mark.asyncio
    async def test_shutdown_twice(self, tmp_path):
        backend = SqliteBackend(database_path=str(tmp_path / "db.sqlite"))
        await backend.initialize()
        await backend.shutdown()
        await backend.shutdown()
        assert not backend.is_initialized

    @pytest.mark.asyncio
    async def test_operations_before_initialize(self, tmp_path):
        backend = SqliteBackend(database_path=str(tmp_path / "db.sqlite"))
        with pytest.raises(StoreError):
            await backend.store(make_entry())
        with pytest.raises(StoreError):
            await backend.retrieve("entry-1")
        with pytest.raises(MaintenanceError):
            await backend.perform_maintenance()

        status = await backend.get_health_status()
        assert status == {"healthy": False, "error": "Database not initialized"}

    @pytest.mark.asyncio
    async def test_initialize_without_schema(self, tmp_path):
        backend = SqliteBackend(database_path=str(tmp_path / "db.sqlite"))
        await backend.initialize(create_schema=False)
        try:
            with pytest.raises(StoreError):
                await backend.count_entries()
            await backend.create_schema()
            assert await backend.count_entries() == 0
        finally:
            await backend.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_failure(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file")
        backend = SqliteBackend(database_path=str(blocker / "db.sqlite"))
        with pytest.raises(InitializationError):
            await backend.initialize()
        assert not backend.is_initialized


class TestSqliteBackendEntries:
    """Test store, retrieve, update and delete."""

    @pytest.mark.asyncio
    async def test_store_and_retrieve(self, sqlite_backend):
        entry = make_entry(metadata={"namespace": "ns"}, version=3)
        await sqlite_backend.store(entry)

        retrieved = await sqlite_backend.retrieve(entry.id)
        assert retrieved == entry

    @pytest.mark.asyncio
    async def test_retrieve_missing(self, sqlite_backend):
        assert await sqlite_backend.retrieve("nope") is None

    @pytest.mark.asyncio
    async def test_store_is_upsert(self, sqlite_backend):
        await sqlite_backend.store(make_entry(content="first"))
        await sqlite_backend.store(make_entry(content="second", tags=["y"]))

        retrieved = await sqlite_backend.retrieve("entry-1")
        assert retrieved.content == "second"
        assert retrieved.tags == ["y"]
        assert await sqlite_backend.count_entries() == 1

    @pytest.mark.asyncio
    async def test_storing_twice_yields_same_state(self, sqlite_backend):
        entry = make_entry()
        await sqlite_backend.store(entry)
        await sqlite_backend.store(entry)
        assert await sqlite_backend.get_all_entries() == [entry]

    @pytest.mark.asyncio
    async def test_update_shares_upsert_path(self, sqlite_backend):
        await sqlite_backend.update("entry-1", make_entry(content="created by update"))
        assert (await sqlite_backend.retrieve("entry-1")).content == "created by update"

    @pytest.mark.asyncio
    async def test_update_clears_optional_fields(self, sqlite_backend):
        await sqlite_backend.store(make_entry(metadata={"namespace": "ns"}))
        await sqlite_backend.store(make_entry())
        assert (await sqlite_backend.retrieve("entry-1")).metadata is None

    @pytest.mark.asyncio
    async def test_delete_parent_nulls_children(self, sqlite_backend):
        await sqlite_backend.store(make_entry("parent"))
        await sqlite_backend.store(make_entry("child", parent_id="parent"))

        await sqlite_backend.delete("parent")

        child = await sqlite_backend.retrieve("child")
        assert child is not None
        assert child.parent_id is None
        assert await sqlite_backend.retrieve("parent") is None

    @pytest.mark.asyncio
    async def test_dangling_parent_is_rejected(self, sqlite_backend):
        with pytest.raises(StoreError):
            await sqlite_backend.store(make_entry("orphan", parent_id="missing"))

    @pytest.mark.asyncio
    async def test_store_batch(self, sqlite_backend):
        entries = [make_entry(f"e{i}", timestamp=at(i)) for i in range(5)]
        await sqlite_backend.store_batch(entries)
        assert await sqlite_backend.count_entries() == 5

    @pytest.mark.asyncio
    async def test_store_batch_child_before_parent(self, sqlite_backend):
        await sqlite_backend.store_batch(
            [make_entry("child", parent_id="parent"), make_entry("parent")]
        )
        assert (await sqlite_backend.retrieve("child")).parent_id == "parent"

    @pytest.mark.asyncio
    async def test_store_batch_is_atomic(self, sqlite_backend):
        with pytest.raises(StoreError):
            await sqlite_backend.store_batch(
                [make_entry("good"), make_entry("bad", parent_id="missing")]
            )
        assert await sqlite_backend.count_entries() == 0

    @pytest.mark.asyncio
    async def test_store_batch_empty(self, sqlite_backend):
        await sqlite_backend.store_batch([])
        assert await sqlite_backend.count_entries() == 0


class TestSqliteBackendQuery:
    """Test filtered queries."""

    @pytest.fixture
    async def populated(self, sqlite_backend):
        await sqlite_backend.store_batch(
            [
                make_entry("e1", agent_id="a1", tags=["x"], timestamp=at(1)),
                make_entry("e2", agent_id="a1", tags=["y", "z"], timestamp=at(2)),
                make_entry("e3", agent_id="a1", tags=["z"], timestamp=at(3)),
                make_entry("e4", agent_id="a2", tags=["x"], timestamp=at(4)),
                make_entry(
                    "e5",
                    agent_id="a2",
                    session_id="s2",
                    type="plan",
                    content="Plan 100% of the trip",
                    metadata={"namespace": "travel"},
                    timestamp=at(5),
                ),
            ]
        )
        return sqlite_backend

    @staticmethod
    def ids(entries):
        return [entry.id for entry in entries]

    @pytest.mark.asyncio
    async def test_agent_and_tags(self, populated):
        result = await populated.query({"agent_id": "a1", "tags": ["x", "y"]})
        assert self.ids(result) == ["e2", "e1"]

    @pytest.mark.asyncio
    async def test_no_filters_returns_newest_first(self, populated):
        result = await populated.query(MemoryQuery())
        assert self.ids(result) == ["e5", "e4", "e3", "e2", "e1"]
        assert self.ids(await populated.get_all_entries()) == self.ids(result)

    @pytest.mark.asyncio
    async def test_session_and_type(self, populated):
        assert self.ids(await populated.query({"session_id": "s2"})) == ["e5"]
        assert self.ids(await populated.query({"type": "plan"})) == ["e5"]

    @pytest.mark.asyncio
    async def test_time_range_is_inclusive(self, populated):
        result = await populated.query({"start_time": at(2), "end_time": at(4)})
        assert self.ids(result) == ["e4", "e3", "e2"]

    @pytest.mark.asyncio
    async def test_time_range_from_strings(self, populated):
        result = await populated.query(
            {"start_time": "2024-01-01T00:00:02Z", "end_time": "2024-01-01T00:00:04Z"}
        )
        assert self.ids(result) == ["e4", "e3", "e2"]

    @pytest.mark.asyncio
    async def test_unparsable_time_bound(self, populated):
        with pytest.raises(ValueError):
            await populated.query({"start_time": "yesterday"})

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, populated):
        assert self.ids(await populated.query({"search": "PLAN"})) == ["e5"]

    @pytest.mark.asyncio
    async def test_search_matches_tags(self, populated):
        assert self.ids(await populated.query({"search": "z"})) == ["e3", "e2"]

    @pytest.mark.asyncio
    async def test_search_escapes_wildcards(self, populated):
        assert self.ids(await populated.query({"search": "100%"})) == ["e5"]
        assert await populated.query({"search": "%"}) == (await populated.query({"search": "100%"}))
        assert await populated.query({"search": "_x"}) == []

    @pytest.mark.asyncio
    async def test_namespace(self, populated):
        assert self.ids(await populated.query({"namespace": "travel"})) == ["e5"]
        assert await populated.query({"namespace": "other"}) == []

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, populated):
        assert self.ids(await populated.query({"limit": 2})) == ["e5", "e4"]
        assert self.ids(await populated.query({"limit": 2, "offset": 2})) == ["e3", "e2"]
        assert self.ids(await populated.query({"offset": 3})) == ["e2", "e1"]

    @pytest.mark.asyncio
    async def test_zero_limit_and_offset_are_no_constraint(self, populated):
        assert len(await populated.query({"limit": 0})) == 5
        assert self.ids(await populated.query({"limit": 0, "offset": 0})) == ["e5", "e4", "e3", "e2", "e1"]

    @pytest.mark.asyncio
    async def test_negative_limit(self, populated):
        with pytest.raises(ValueError):
            await populated.query({"limit": -1})

    @pytest.mark.asyncio
    async def test_empty_tag_list_is_no_constraint(self, populated):
        assert len(await populated.query({"tags": []})) == 5

    @pytest.mark.asyncio
    async def test_unknown_query_field(self, populated):
        with pytest.raises(ValueError):
            await populated.query({"colour": "blue"})


class TestSqliteBackendHealth:
    """Test health reporting and maintenance."""

    @pytest.mark.asyncio
    async def test_health_metrics(self, sqlite_backend):
        await sqlite_backend.store(make_entry())
        status = await sqlite_backend.get_health_status()

        assert status["healthy"] is True
        metrics = status["metrics"]
        assert metrics["entry_count"] == 1
        assert metrics["table_size_bytes"] > 0
        assert metrics["total_connections"] >= 1
        assert metrics["idle_connections"] >= 1
        assert metrics["waiting_count"] == 0

    @pytest.mark.asyncio
    async def test_maintenance(self, sqlite_backend):
        await sqlite_backend.store_batch([make_entry(f"e{i}") for i in range(20)])
        for i in range(20):
            await sqlite_backend.delete(f"e{i}")
        await sqlite_backend.perform_maintenance()
        assert (await sqlite_backend.get_health_status())["healthy"] is True

    @pytest.mark.asyncio
    async def test_concurrent_operations_respect_pool_bound(self, tmp_path):
        backend = SqliteBackend(
            database_path=str(tmp_path / "db.sqlite"),
            pool_config=PoolConfig(max_connections=2, enable_monitoring=False),
        )
        await backend.initialize()
        try:
            await asyncio.gather(
                *(backend.store(make_entry(f"e{i}", timestamp=at(i))) for i in range(10))
            )
            assert await backend.count_entries() == 10
            metrics = (await backend.get_health_status())["metrics"]
            assert metrics["total_connections"] <= 2
        finally:
            await backend.shutdown()
