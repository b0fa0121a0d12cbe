"""Tests for the two-tier output cache."""

import asyncio

from services.pipeline.cache import DURABLE_TIER, MEMORY_TIER, OutputCache
from services.pipeline.models import (
    ExecutionRecord,
    ExecutionStatus,
    NodeSnapshot,
    NodeStatus,
)
from services.pipeline.shapes import summarize_output


async def saved_record(store, *snapshots, execution_id="exec-1"):
    record = ExecutionRecord(
        id=execution_id,
        workflow_id="wf-test",
        status=ExecutionStatus.RUNNING,
        node_snapshots=list(snapshots),
    )
    await store.save_execution(record)
    return record


def completed_snapshot(node_id, output):
    return NodeSnapshot(node_id=node_id, node_name=node_id, node_type="echo",
                        status=NodeStatus.COMPLETED, output_data=output)


class FailingTier:
    async def read_output(self, execution_id, node_id):
        raise ConnectionError("store offline")

    async def write_output(self, execution_id, node_id, value, node_type):
        raise ConnectionError("store offline")


class TestMemoryTier:
    """Small outputs stay in memory."""

    async def test_store_and_get(self, output_cache):
        tier = await output_cache.store("exec-1", "A", [{"id": 1}], "echo")
        assert tier == MEMORY_TIER
        assert await output_cache.get("exec-1", "A") == [{"id": 1}]

    async def test_threshold_is_inclusive(self, recorder):
        cache = OutputCache(recorder, threshold=3)
        assert await cache.store("exec-1", "A", [1, 2, 3]) == MEMORY_TIER

    async def test_scalars_and_objects_count_as_zero_items(self, recorder):
        cache = OutputCache(recorder, threshold=1)
        assert await cache.store("exec-1", "A", {"rows": [1, 2, 3]}) == MEMORY_TIER

    async def test_fifo_eviction(self, recorder):
        cache = OutputCache(recorder, max_memory_nodes=2)
        for node_id in ("A", "B", "C"):
            await cache.store("exec-1", node_id, [node_id])
        assert cache.get_from_memory("exec-1", "A") is None
        assert await cache.get("exec-1", "A") == []
        assert await cache.get("exec-1", "C") == ["C"]

    async def test_executions_are_isolated(self, output_cache):
        await output_cache.store("exec-1", "A", [1])
        await output_cache.store("exec-2", "A", [2])
        assert await output_cache.get("exec-1", "A") == [1]
        assert await output_cache.get("exec-2", "A") == [2]

    async def test_missing_output_is_empty_list(self, output_cache):
        assert await output_cache.get("exec-1", "nobody") == []

    async def test_cleanup_drops_memory_tier(self, output_cache):
        await output_cache.store("exec-1", "A", [1])
        await output_cache.cleanup("exec-1")
        assert output_cache.get_from_memory("exec-1", "A") is None
        assert output_cache.get_execution_stats("exec-1")["memory_nodes"] == 0

    async def test_execution_stats(self, output_cache):
        await output_cache.store("exec-1", "A", [{"id": 1}, {"id": 2}])
        await output_cache.store("exec-1", "B", [])
        stats = output_cache.get_execution_stats("exec-1")
        assert stats["memory_nodes"] == 2
        assert stats["node_counts"] == {"A": 2, "B": 0}
        assert stats["total_data_size_kb"] >= 0


class TestDurableTier:
    """Large outputs go to the execution record."""

    async def test_summary_envelope_replaced_by_raw_output(self, recorder, cache_store):
        items = [{"id": i} for i in range(5)]
        await saved_record(cache_store, completed_snapshot("A", summarize_output(items)))
        cache = OutputCache(recorder, threshold=3)

        assert await cache.store("exec-1", "A", items, "echo") == DURABLE_TIER
        assert cache.get_from_memory("exec-1", "A") is None

        stored = await cache_store.find_execution("exec-1")
        assert stored.get_snapshot("A").output_data == items
        assert await cache.get("exec-1", "A") == items

    async def test_formatted_output_is_preserved(self, recorder, cache_store):
        formatted = {"data": [{"id": 1}], "duplicates": [{"id": 1}]}
        await saved_record(cache_store, completed_snapshot("A", formatted))
        cache = OutputCache(recorder, threshold=3)

        assert await cache.store("exec-1", "A", [1, 2, 3, 4, 5]) == DURABLE_TIER

        stored = await cache_store.find_execution("exec-1")
        assert stored.get_snapshot("A").output_data == formatted
        assert await cache.get("exec-1", "A") == [{"id": 1}]

    async def test_equal_value_is_not_rewritten(self, recorder, cache_store):
        items = [1, 2, 3, 4]
        await saved_record(cache_store, completed_snapshot("A", items))
        cache = OutputCache(recorder, threshold=3)
        assert await cache.store("exec-1", "A", list(items)) == DURABLE_TIER

    async def test_missing_snapshot_created(self, recorder, cache_store):
        await saved_record(cache_store)
        cache = OutputCache(recorder, threshold=1)
        assert await cache.store("exec-1", "B", [1, 2], "echo") == DURABLE_TIER

        snapshot = (await cache_store.find_execution("exec-1")).get_snapshot("B")
        assert snapshot.output_data == [1, 2]
        assert snapshot.metrics.output_count == 2

    async def test_live_record_updated_in_place(self, recorder, cache_store):
        record = await saved_record(cache_store, completed_snapshot("A", summarize_output([])))
        recorder.attach(record)
        cache = OutputCache(recorder, threshold=1)

        await cache.store("exec-1", "A", [1, 2])
        assert record.get_snapshot("A").output_data == [1, 2]

    async def test_missing_record_falls_back_to_memory(self, recorder):
        cache = OutputCache(recorder, threshold=1)
        assert await cache.store("exec-unknown", "A", [1, 2]) == MEMORY_TIER
        assert await cache.get("exec-unknown", "A") == [1, 2]

    async def test_store_error_falls_back_to_memory(self):
        cache = OutputCache(FailingTier(), threshold=1)
        assert await cache.store("exec-1", "A", [1, 2]) == MEMORY_TIER
        assert await cache.get("exec-1", "A") == [1, 2]

    async def test_read_error_yields_empty_list(self):
        cache = OutputCache(FailingTier())
        assert await cache.get("exec-1", "A") == []


class TestConcurrentWrites:

    async def test_distinct_nodes_all_land(self, output_cache):
        await asyncio.gather(*(
            output_cache.store("exec-1", f"N{i}", [i]) for i in range(5)
        ))
        stats = output_cache.get_execution_stats("exec-1")
        assert stats["node_counts"] == {f"N{i}": 1 for i in range(5)}

    async def test_same_node_last_write_wins(self, output_cache):
        await asyncio.gather(
            output_cache.store("exec-1", "A", ["first"]),
            output_cache.store("exec-1", "A", ["second"]),
        )
        assert await output_cache.get("exec-1", "A") == ["second"]
