"""Two-tier node output cache.

Small outputs (item count at or below the threshold) live in a bounded
per-execution memory table. Larger outputs go to the durable tier, which
piggy-backs on the node's snapshot inside the ExecutionRecord.

Memory tier layout:
    {execution_id: OrderedDict{node_id: OutputCacheEntry}}  (FIFO eviction)
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

from core.logging import get_logger, log_cache_operation
from .errors import CacheWriteConflict
from .shapes import (
    byte_size,
    describe_shape,
    is_fully_formatted,
    item_count,
    unwrap_stored_output,
)

logger = get_logger(__name__)

MEMORY_TIER = "memory"
DURABLE_TIER = "durable"

DEFAULT_THRESHOLD = 1000
DEFAULT_MAX_MEMORY_NODES = 10


class DurableOutputTier(Protocol):
    """Durable home for node outputs (implemented by SnapshotRecorder)."""

    async def read_output(self, execution_id: str, node_id: str) -> Any:
        """Stored output for a node, or None if there is none."""
        ...

    async def write_output(self, execution_id: str, node_id: str, value: Any, node_type: str) -> bool:
        """Persist an output. False if the execution record does not exist."""
        ...


@dataclass
class OutputCacheEntry:
    value: Any
    item_count: int
    byte_size: int
    node_type: str
    timestamp: float


class OutputCache:
    """Hybrid memory + durable store keyed by (execution_id, node_id)."""

    def __init__(self, durable: DurableOutputTier,
                 threshold: int = DEFAULT_THRESHOLD,
                 max_memory_nodes: int = DEFAULT_MAX_MEMORY_NODES):
        self.durable = durable
        self.threshold = threshold
        self.max_memory_nodes = max_memory_nodes
        self._memory: Dict[str, "OrderedDict[str, OutputCacheEntry]"] = {}
        self._write_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock(self, execution_id: str, node_id: str) -> asyncio.Lock:
        key = (execution_id, node_id)
        lock = self._write_locks.get(key)
        if lock is None:
            lock = self._write_locks[key] = asyncio.Lock()
        return lock

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def store(self, execution_id: str, node_id: str, value: Any,
                    node_type: str = "unknown") -> str:
        """Store a node's raw output.

        Returns:
            The tier that holds the value ("memory" or "durable")
        """
        count = item_count(value)
        async with self._lock(execution_id, node_id):
            if count <= self.threshold:
                self._store_in_memory(execution_id, node_id, value, node_type, count)
                return MEMORY_TIER

            if await self._store_durable(execution_id, node_id, value, node_type):
                log_cache_operation(logger, "store", f"{execution_id}:{node_id}",
                                    tier=DURABLE_TIER, item_count=count)
                return DURABLE_TIER

            self._store_in_memory(execution_id, node_id, value, node_type, count)
            return MEMORY_TIER

    def _store_in_memory(self, execution_id: str, node_id: str, value: Any,
                         node_type: str, count: int) -> None:
        table = self._memory.setdefault(execution_id, OrderedDict())
        table[node_id] = OutputCacheEntry(
            value=value,
            item_count=count,
            byte_size=byte_size(value),
            node_type=node_type,
            timestamp=time.time(),
        )
        log_cache_operation(logger, "store", f"{execution_id}:{node_id}",
                            tier=MEMORY_TIER, item_count=count)

        while len(table) > self.max_memory_nodes:
            evicted, _ = table.popitem(last=False)
            logger.debug("Evicted node output from memory cache",
                         execution_id=execution_id, node_id=evicted)

    async def _store_durable(self, execution_id: str, node_id: str, value: Any,
                             node_type: str) -> bool:
        """Write to the durable tier. False means fall back to memory."""
        try:
            existing = await self.durable.read_output(execution_id, node_id)
            if existing == value:
                return True
            if is_fully_formatted(existing):
                conflict = CacheWriteConflict(execution_id, node_id, describe_shape(existing))
                logger.warning("Cache write conflict, keeping formatted output",
                               execution_id=execution_id,
                               node_id=node_id,
                               existing_shape=conflict.existing_shape,
                               error=str(conflict))
                return True

            if await self.durable.write_output(execution_id, node_id, value, node_type):
                return True
            logger.warning("Durable tier has no execution record, using memory",
                           execution_id=execution_id, node_id=node_id)
            return False

        except Exception as e:
            logger.error("Durable output write failed, using memory",
                         execution_id=execution_id, node_id=node_id, error=str(e))
            return False

    # =========================================================================
    # READ PATH
    # =========================================================================

    def get_from_memory(self, execution_id: str, node_id: str) -> Optional[OutputCacheEntry]:
        table = self._memory.get(execution_id)
        return table.get(node_id) if table else None

    async def get(self, execution_id: str, node_id: str) -> Any:
        """Fetch a node's output, memory first. Never returns None."""
        key = f"{execution_id}:{node_id}"
        entry = self.get_from_memory(execution_id, node_id)
        if entry is not None:
            log_cache_operation(logger, "get", key, hit=True, tier=MEMORY_TIER)
            return entry.value

        try:
            stored = await self.durable.read_output(execution_id, node_id)
        except Exception as e:
            logger.error("Durable output read failed", execution_id=execution_id,
                         node_id=node_id, error=str(e))
            stored = None

        if stored is not None:
            log_cache_operation(logger, "get", key, hit=True, tier=DURABLE_TIER)
            return unwrap_stored_output(stored)

        logger.warning("No output found for node", execution_id=execution_id, node_id=node_id)
        return []

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def cleanup(self, execution_id: str) -> None:
        """Drop the execution's memory tier once it reaches a terminal status."""
        self._memory.pop(execution_id, None)
        for key in [k for k in self._write_locks if k[0] == execution_id]:
            del self._write_locks[key]
        logger.debug("Cleaned up memory cache for execution", execution_id=execution_id)

    def get_execution_stats(self, execution_id: str) -> Dict[str, Any]:
        table = self._memory.get(execution_id) or {}
        total_bytes = sum(entry.byte_size for entry in table.values())
        return {
            "memory_nodes": len(table),
            "total_data_size_kb": round(total_bytes / 1024),
            "node_counts": {node_id: entry.item_count for node_id, entry in table.items()},
        }
