"""Durable execution stores.

Both stores persist ``ExecutionRecord`` as JSON-ready dicts:

- DatabaseExecutionStore: SQL table via ``core.database.Database``
- CacheExecutionStore: ``core.cache.CacheService`` (Redis or memory)

Key schema (CacheExecutionStore):
    execution:{id}:record   -> JSON ExecutionRecord
    executions:active       -> SET {execution_ids still pending/running}
    executions:workflow:{w} -> SET {execution_ids for a workflow}
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING

from core.logging import get_logger
from .models import ExecutionRecord, ExecutionStatus, serialize_partial

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.database import Database

logger = get_logger(__name__)

TERMINAL_RECORD_TTL = 86400  # 24 hours


class ExecutionStore(Protocol):
    """Minimal read/write contract the engine needs from durable storage."""

    async def find_execution(self, execution_id: str) -> Optional[ExecutionRecord]: ...

    async def save_execution(self, record: ExecutionRecord) -> None: ...

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> bool: ...

    async def list_executions(self, workflow_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 50) -> List[ExecutionRecord]: ...


class DatabaseExecutionStore:
    """ExecutionStore backed by the ``workflow_executions`` table."""

    def __init__(self, database: "Database"):
        self.database = database

    async def find_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        data = await self.database.get_workflow_execution(execution_id)
        return ExecutionRecord.from_dict(data) if data else None

    async def save_execution(self, record: ExecutionRecord) -> None:
        await self.database.save_workflow_execution(record.to_dict())

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> bool:
        updated = await self.database.update_workflow_execution(execution_id, serialize_partial(partial))
        if not updated:
            logger.warning("Update for unknown execution ignored", execution_id=execution_id)
        return updated

    async def list_executions(self, workflow_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 50) -> List[ExecutionRecord]:
        rows = await self.database.list_workflow_executions(workflow_id, status, limit)
        return [ExecutionRecord.from_dict(row) for row in rows]


class CacheExecutionStore:
    """ExecutionStore backed by the cache service.

    Active records never expire; terminal ones expire after 24 hours.
    Read-modify-write updates are serialized per execution within a process.
    """

    ACTIVE_KEY = "executions:active"

    def __init__(self, cache: "CacheService"):
        self.cache = cache
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _record_key(execution_id: str) -> str:
        return f"execution:{execution_id}:record"

    @staticmethod
    def _workflow_key(workflow_id: str) -> str:
        return f"executions:workflow:{workflow_id}"

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    async def _write(self, data: Dict[str, Any]) -> None:
        execution_id = data["id"]
        status = ExecutionStatus(data["status"])
        ttl = TERMINAL_RECORD_TTL if status.is_terminal else 0
        if not await self.cache.set(self._record_key(execution_id), data, ttl=ttl):
            raise RuntimeError(f"Cache write failed for execution {execution_id}")

        if status.is_terminal:
            await self.cache.set_remove(self.ACTIVE_KEY, execution_id)
            self._locks.pop(execution_id, None)
        else:
            await self.cache.set_add(self.ACTIVE_KEY, execution_id)

    async def find_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        data = await self.cache.get(self._record_key(execution_id))
        return ExecutionRecord.from_dict(data) if data else None

    async def save_execution(self, record: ExecutionRecord) -> None:
        async with self._lock(record.id):
            await self._write(record.to_dict())
            await self.cache.set_add(self._workflow_key(record.workflow_id), record.id)
        logger.debug("Saved execution record", execution_id=record.id, status=record.status.value)

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> bool:
        values = serialize_partial(partial)
        async with self._lock(execution_id):
            data = await self.cache.get(self._record_key(execution_id))
            if not data:
                logger.warning("Update for unknown execution ignored", execution_id=execution_id)
                return False
            data.update(values)
            await self._write(data)
        return True

    async def get_active_executions(self) -> List[str]:
        return sorted(await self.cache.set_members(self.ACTIVE_KEY))

    async def list_executions(self, workflow_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 50) -> List[ExecutionRecord]:
        if workflow_id:
            ids = await self.cache.set_members(self._workflow_key(workflow_id))
        else:
            ids = await self.cache.set_members(self.ACTIVE_KEY)

        records = []
        for execution_id in ids:
            record = await self.find_execution(execution_id)
            if record and (status is None or record.status.value == status):
                records.append(record)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]
