"""Node snapshot recording.

SnapshotRecorder is the only writer of ``node_snapshots``. It keeps the live
ExecutionRecord of every running execution, persists after each node start
and completion, and doubles as the OutputCache's durable tier so large
outputs land in the same snapshot list instead of racing it.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from core.logging import get_logger
from .models import (
    ExecutionRecord,
    NodeMetrics,
    NodeSnapshot,
    NodeStatus,
    WorkflowNode,
)
from .shapes import byte_size, item_count
from .store import ExecutionStore

logger = get_logger(__name__)


class SnapshotRecorder:
    """Records node snapshots onto live execution records."""

    def __init__(self, store: ExecutionStore):
        self.store = store
        self._live: Dict[str, ExecutionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    def attach(self, record: ExecutionRecord) -> None:
        self._live[record.id] = record

    def detach(self, execution_id: str) -> None:
        self._live.pop(execution_id, None)
        self._locks.pop(execution_id, None)

    def get_live(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._live.get(execution_id)

    # =========================================================================
    # NODE LIFECYCLE
    # =========================================================================

    async def start_node(self, record: ExecutionRecord, node: WorkflowNode,
                         input_data: Any) -> NodeSnapshot:
        """Record a node as running with its resolved input."""
        snapshot = NodeSnapshot(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            status=NodeStatus.RUNNING,
            started_at=time.time(),
            input_data=input_data,
            metrics=NodeMetrics(
                data_size=byte_size(input_data),
                input_count=item_count(input_data),
            ),
        )
        async with self._lock(record.id):
            record.upsert_snapshot(snapshot)
            await self._persist(record)
        return snapshot

    async def finish_node(self, record: ExecutionRecord, snapshot: NodeSnapshot,
                          status: NodeStatus, output_data: Any = None,
                          error: Optional[str] = None) -> NodeSnapshot:
        """Record a node's terminal status, output and timing."""
        snapshot.status = status
        snapshot.completed_at = time.time()
        snapshot.output_data = output_data
        snapshot.error = error
        snapshot.progress = 100 if status == NodeStatus.COMPLETED else snapshot.progress
        if snapshot.started_at is not None:
            snapshot.duration_ms = round((snapshot.completed_at - snapshot.started_at) * 1000, 3)

        async with self._lock(record.id):
            record.upsert_snapshot(snapshot)
            await self._persist(record)
        return snapshot

    async def persist_record(self, record: ExecutionRecord) -> None:
        """Persist snapshots and running metrics outside a node transition."""
        async with self._lock(record.id):
            await self._persist(record)

    async def finalize(self, record: ExecutionRecord) -> None:
        """Persist the terminal status together with the final snapshots and metrics."""
        async with self._lock(record.id):
            try:
                await self.store.update_execution(record.id, {
                    "status": record.status,
                    "completed_at": record.completed_at,
                    "error": record.error,
                    "node_snapshots": list(record.node_snapshots),
                    "metrics": record.metrics,
                    "cancellation_reason": record.cancellation_reason,
                    "cancelled_by": record.cancelled_by,
                    "cancelled_at": record.cancelled_at,
                })
            except Exception as e:
                logger.error("Failed to persist execution result",
                             execution_id=record.id, status=record.status.value, error=str(e))

    async def _persist(self, record: ExecutionRecord, strict: bool = False) -> bool:
        """Write snapshots and metrics. Errors are logged, and re-raised when strict."""
        try:
            return await self.store.update_execution(record.id, {
                "node_snapshots": list(record.node_snapshots),
                "metrics": record.metrics,
            })
        except Exception as e:
            logger.error("Failed to persist node snapshots", execution_id=record.id, error=str(e))
            if strict:
                raise
            return False

    # =========================================================================
    # DURABLE OUTPUT TIER
    # =========================================================================

    async def read_output(self, execution_id: str, node_id: str) -> Any:
        record = self._live.get(execution_id) or await self.store.find_execution(execution_id)
        if record is None:
            return None
        snapshot = record.get_snapshot(node_id)
        return snapshot.output_data if snapshot else None

    async def write_output(self, execution_id: str, node_id: str, value: Any,
                           node_type: str = "unknown") -> bool:
        """Store a node output on its snapshot.

        Returns False when the execution record does not exist.
        Store errors propagate so the caller can fall back.
        """
        record = self._live.get(execution_id)
        if record is None:
            record = await self.store.find_execution(execution_id)
            if record is None:
                return False

        async with self._lock(execution_id):
            snapshot = record.get_snapshot(node_id)
            if snapshot is None:
                snapshot = NodeSnapshot(
                    node_id=node_id,
                    node_name=node_id,
                    node_type=node_type,
                    status=NodeStatus.COMPLETED,
                    completed_at=time.time(),
                )
                record.upsert_snapshot(snapshot)
            snapshot.output_data = value
            snapshot.metrics.output_count = item_count(value)
            return await self._persist(record, strict=True)
