"""Execution orchestration.

Entry points callers use to run and inspect workflow executions:

    record = await orchestrator.execute_workflow_sync(workflow, input_data)

    pending = await orchestrator.create_pending_execution(workflow)
    await orchestrator.start_execution(pending.id, workflow, input_data)
    await orchestrator.cancel_execution(pending.id, reason="superseded")
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

from core.logging import get_logger
from .cache import OutputCache
from .cancellation import CancellationSignals
from .errors import ExecutionNotFound, InvalidExecutionState
from .executor import DEFAULT_CANCEL_REASON, WorkflowExecutor
from .models import ExecutionRecord, ExecutionStatus, NodeSnapshot, WorkflowDefinition
from .shapes import output_data_count
from .store import ExecutionStore

logger = get_logger(__name__)


class WorkflowOrchestrator:
    """Runs executions synchronously or as background tasks and serves their state."""

    def __init__(self, executor: WorkflowExecutor, store: ExecutionStore,
                 output_cache: OutputCache, signals: CancellationSignals):
        self.executor = executor
        self.store = store
        self.output_cache = output_cache
        self.signals = signals
        self._tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # RUNNING
    # =========================================================================

    async def execute_workflow_sync(self, workflow: WorkflowDefinition,
                                    input_data: Any = None,
                                    context: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        """Run a workflow and wait for its terminal record."""
        return await self.executor.execute_workflow(workflow, input_data, context)

    async def create_pending_execution(self, workflow: WorkflowDefinition,
                                       context: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        """Persist a PENDING record so callers get an id before the run starts."""
        context = dict(context or {})
        record = ExecutionRecord(
            id=context.get("execution_id") or str(uuid.uuid4()),
            workflow_id=workflow.id,
            status=ExecutionStatus.PENDING,
            document_id=context.get("document_id"),
            dataset_id=context.get("dataset_id"),
            trigger_source=context.get("trigger_source", "manual"),
            trigger_data=context.get("trigger_data"),
            execution_context=self.executor.build_execution_context(context),
        )
        await self.store.save_execution(record)
        logger.info("Created pending execution", execution_id=record.id, workflow_id=workflow.id)
        return record

    async def execute_pending(self, execution_id: str, workflow: WorkflowDefinition,
                              input_data: Any = None,
                              context: Optional[Dict[str, Any]] = None) -> ExecutionRecord:
        """Adopt a pre-created record and run it to completion.

        Raises:
            ExecutionNotFound: If no record exists for the id
            InvalidExecutionState: If the record is neither pending nor cancelled
        """
        record = await self.store.find_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return await self.executor.execute_workflow(workflow, input_data, context, record=record)

    async def start_execution(self, execution_id: str, workflow: WorkflowDefinition,
                              input_data: Any = None,
                              context: Optional[Dict[str, Any]] = None) -> asyncio.Task:
        """Run a pre-created execution as a background task."""
        task = asyncio.create_task(
            self.execute_pending(execution_id, workflow, input_data, context),
            name=f"execution-{execution_id}",
        )
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._on_task_done(execution_id, t))
        return task

    def _on_task_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background execution raised", execution_id=execution_id, error=str(error))

    async def wait_for(self, execution_id: str) -> ExecutionRecord:
        """Wait for a background execution, then return its stored record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.get_execution(execution_id)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def cancel_execution(self, execution_id: str, reason: Optional[str] = None,
                               cancelled_by: Optional[str] = None) -> ExecutionRecord:
        """Cancel a pending or running execution.

        A running scheduler stops at its next node boundary; the in-flight
        node (or batch) finishes first.

        Raises:
            ExecutionNotFound: If no record exists for the id
            InvalidExecutionState: If the execution already reached a terminal status
        """
        record = await self.get_execution(execution_id)
        if record.is_terminal:
            raise InvalidExecutionState(execution_id, record.status.value, "cancel")

        signal = await self.signals.request(execution_id, reason or DEFAULT_CANCEL_REASON, cancelled_by)
        record.apply({
            "status": ExecutionStatus.CANCELLED,
            "cancellation_reason": signal["reason"],
            "cancelled_by": signal["cancelled_by"],
            "cancelled_at": signal["cancelled_at"],
            "completed_at": time.time(),
        })
        await self.store.update_execution(execution_id, {
            "status": record.status,
            "cancellation_reason": record.cancellation_reason,
            "cancelled_by": record.cancelled_by,
            "cancelled_at": record.cancelled_at,
            "completed_at": record.completed_at,
        })
        logger.info("Execution cancelled", execution_id=execution_id,
                    reason=record.cancellation_reason, cancelled_by=cancelled_by)
        return record

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        live = self.executor.recorder.get_live(execution_id)
        if live is not None:
            return live
        record = await self.store.find_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def list_executions(self, workflow_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 50) -> List[ExecutionRecord]:
        return await self.store.list_executions(workflow_id, status, limit)

    async def get_node_snapshot(self, execution_id: str, node_id: str) -> Optional[NodeSnapshot]:
        """Snapshot for a node, with output taken from the memory tier while the run is live."""
        record = await self.get_execution(execution_id)
        snapshot = record.get_snapshot(node_id)
        if snapshot is None:
            return None

        refreshed = NodeSnapshot.from_dict(snapshot.to_dict())
        entry = self.output_cache.get_from_memory(execution_id, node_id)
        if entry is not None:
            refreshed.output_data = entry.value
        return refreshed

    @staticmethod
    def get_output_data_count(value: Any) -> int:
        return output_data_count(value)

    async def get_node_output_count(self, execution_id: str, node_id: str) -> int:
        snapshot = await self.get_node_snapshot(execution_id, node_id)
        return output_data_count(snapshot.output_data) if snapshot else 0

    def get_cache_stats(self, execution_id: str) -> Dict[str, Any]:
        return self.output_cache.get_execution_stats(execution_id)

    async def shutdown(self) -> None:
        """Cancel background executions and wait for them to record their status."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator shut down", cancelled_tasks=len(tasks))
