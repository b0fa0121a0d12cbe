"""Tests for WorkflowOrchestrator entry points and queries."""

import pytest

from services.pipeline.errors import ExecutionNotFound, InvalidExecutionState
from services.pipeline.models import ExecutionStatus
from services.pipeline.orchestrator import WorkflowOrchestrator


class TestRunning:

    async def test_execute_workflow_sync(self, orchestrator, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("A", "mark")]), [1])

        assert record.status == ExecutionStatus.COMPLETED
        stored = await orchestrator.get_execution(record.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.get_snapshot("A").output_data["items"] == [1, "A"]

    async def test_create_pending_execution(self, orchestrator, cache_store, make_workflow):
        record = await orchestrator.create_pending_execution(
            make_workflow([("A", "echo")]),
            {"execution_id": "exec-pre", "user_id": "u-1", "trigger_source": "schedule"},
        )

        assert record.id == "exec-pre"
        assert record.status == ExecutionStatus.PENDING
        assert record.trigger_source == "schedule"
        assert record.execution_context["user_id"] == "u-1"

        stored = await cache_store.find_execution("exec-pre")
        assert stored.status == ExecutionStatus.PENDING
        assert "exec-pre" in await cache_store.get_active_executions()

    async def test_execute_pending_adopts_record(self, orchestrator, journal, make_workflow):
        workflow = make_workflow([("A", "echo")])
        pending = await orchestrator.create_pending_execution(workflow)

        record = await orchestrator.execute_pending(pending.id, workflow, [{"id": 1}])

        assert record.id == pending.id
        assert record.status == ExecutionStatus.COMPLETED
        assert record.started_at is not None
        assert journal.inputs["A"] == [{"id": 1}]

    async def test_execute_pending_unknown_id(self, orchestrator, make_workflow):
        with pytest.raises(ExecutionNotFound):
            await orchestrator.execute_pending("missing", make_workflow([("A", "echo")]))

    async def test_completed_record_cannot_restart(self, orchestrator, make_workflow):
        workflow = make_workflow([("A", "echo")])
        record = await orchestrator.execute_workflow_sync(workflow)
        with pytest.raises(InvalidExecutionState):
            await orchestrator.execute_pending(record.id, workflow)

    async def test_background_execution(self, orchestrator, make_workflow):
        workflow = make_workflow([("A", "slow"), ("B", "echo")], [("A", "B")])
        pending = await orchestrator.create_pending_execution(workflow)

        task = await orchestrator.start_execution(pending.id, workflow, [])
        record = await orchestrator.wait_for(pending.id)

        assert task.done()
        assert record.status == ExecutionStatus.COMPLETED
        assert [s.node_id for s in record.node_snapshots] == ["A", "B"]

    async def test_background_errors_are_contained(self, orchestrator, make_workflow):
        workflow = make_workflow([("A", "echo")])
        record = await orchestrator.execute_workflow_sync(workflow)

        await orchestrator.start_execution(record.id, workflow)
        result = await orchestrator.wait_for(record.id)

        assert result.status == ExecutionStatus.COMPLETED


class TestQueries:

    async def test_get_execution_unknown(self, orchestrator):
        with pytest.raises(ExecutionNotFound):
            await orchestrator.get_execution("missing")

    async def test_list_executions_by_workflow_and_status(self, orchestrator, make_workflow):
        ok = await orchestrator.execute_workflow_sync(make_workflow([("A", "echo")], workflow_id="wf-1"))
        bad = await orchestrator.execute_workflow_sync(make_workflow([("B", "boom")], workflow_id="wf-1"))
        await orchestrator.execute_workflow_sync(make_workflow([("C", "echo")], workflow_id="wf-2"))

        listed = await orchestrator.list_executions("wf-1")
        assert {r.id for r in listed} == {ok.id, bad.id}

        failed = await orchestrator.list_executions("wf-1", status="failed")
        assert [r.id for r in failed] == [bad.id]

    async def test_node_snapshot_from_store(self, orchestrator, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("E", "emit")]))

        snapshot = await orchestrator.get_node_snapshot(record.id, "E")
        assert snapshot.output_data["count"] == 2
        assert await orchestrator.get_node_output_count(record.id, "E") == 2

    async def test_node_snapshot_prefers_memory_tier(self, orchestrator, output_cache, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("E", "emit")]))
        await output_cache.store(record.id, "E", [{"id": "fresh"}])

        snapshot = await orchestrator.get_node_snapshot(record.id, "E")
        assert snapshot.output_data == [{"id": "fresh"}]

        stored = await orchestrator.get_execution(record.id)
        assert stored.get_snapshot("E").output_data["count"] == 2

    async def test_node_snapshot_reads_are_repeatable(self, orchestrator, output_cache, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("A", "mark"), ("E", "emit")]), ["s"])
        await output_cache.store(record.id, "E", [{"id": "fresh"}])

        for node_id in ("A", "E"):
            first = await orchestrator.get_node_snapshot(record.id, node_id)
            second = await orchestrator.get_node_snapshot(record.id, node_id)

            assert first is not second
            assert first.input_data == second.input_data
            assert first.output_data == second.output_data
            assert first.to_dict() == second.to_dict()

    async def test_unknown_node_snapshot(self, orchestrator, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("A", "echo")]))
        assert await orchestrator.get_node_snapshot(record.id, "ghost") is None
        assert await orchestrator.get_node_output_count(record.id, "ghost") == 0

    def test_output_data_count(self):
        assert WorkflowOrchestrator.get_output_data_count([1, 2, 3]) == 3
        assert WorkflowOrchestrator.get_output_data_count({"total": 12, "rows": []}) == 12
        assert WorkflowOrchestrator.get_output_data_count("text") == 0

    async def test_cache_stats_empty_after_run(self, orchestrator, make_workflow):
        record = await orchestrator.execute_workflow_sync(make_workflow([("A", "echo")]), [1])
        assert orchestrator.get_cache_stats(record.id) == {
            "memory_nodes": 0,
            "total_data_size_kb": 0,
            "node_counts": {},
        }
