"""Execution notifications.

Usage:
    from services.pipeline.notifications import create_notifier

    notifier = create_notifier(enabled=True)
    await notify(notifier, "on_node_completed", execution_id, snapshot)

Notifier failures are logged and never affect the execution.
"""

from typing import Any, List, Protocol

from core.logging import get_logger
from .models import ExecutionRecord, NodeSnapshot

logger = get_logger(__name__)


class NotifierProtocol(Protocol):
    """Receives execution lifecycle events."""

    async def on_node_started(self, execution_id: str, node_id: str, node_name: str) -> None: ...

    async def on_node_completed(self, execution_id: str, snapshot: NodeSnapshot) -> None: ...

    async def on_execution_completed(self, record: ExecutionRecord) -> None: ...

    async def on_execution_failed(self, record: ExecutionRecord, error: str) -> None: ...


class NullNotifier:
    """No-op notifier (Null Object pattern)."""

    async def on_node_started(self, execution_id: str, node_id: str, node_name: str) -> None:
        pass

    async def on_node_completed(self, execution_id: str, snapshot: NodeSnapshot) -> None:
        pass

    async def on_execution_completed(self, record: ExecutionRecord) -> None:
        pass

    async def on_execution_failed(self, record: ExecutionRecord, error: str) -> None:
        pass


class LoggingNotifier:
    """Emits lifecycle events as structured log lines."""

    async def on_node_started(self, execution_id: str, node_id: str, node_name: str) -> None:
        logger.info("Node started", execution_id=execution_id, node_id=node_id, node_name=node_name)

    async def on_node_completed(self, execution_id: str, snapshot: NodeSnapshot) -> None:
        logger.info("Node finished",
                    execution_id=execution_id,
                    node_id=snapshot.node_id,
                    status=snapshot.status.value,
                    duration_ms=snapshot.duration_ms,
                    error=snapshot.error)

    async def on_execution_completed(self, record: ExecutionRecord) -> None:
        logger.info("Execution completed",
                    execution_id=record.id,
                    workflow_id=record.workflow_id,
                    completed_nodes=record.metrics.completed_nodes,
                    failed_nodes=record.metrics.failed_nodes)

    async def on_execution_failed(self, record: ExecutionRecord, error: str) -> None:
        logger.warning("Execution failed",
                       execution_id=record.id,
                       workflow_id=record.workflow_id,
                       error=error)


class CompositeNotifier:
    """Fans events out to several notifiers, isolating each one's failures."""

    def __init__(self, notifiers: List[NotifierProtocol]):
        self.notifiers = list(notifiers)

    async def _dispatch(self, event: str, *args: Any) -> None:
        for notifier in self.notifiers:
            await notify(notifier, event, *args)

    async def on_node_started(self, execution_id: str, node_id: str, node_name: str) -> None:
        await self._dispatch("on_node_started", execution_id, node_id, node_name)

    async def on_node_completed(self, execution_id: str, snapshot: NodeSnapshot) -> None:
        await self._dispatch("on_node_completed", execution_id, snapshot)

    async def on_execution_completed(self, record: ExecutionRecord) -> None:
        await self._dispatch("on_execution_completed", record)

    async def on_execution_failed(self, record: ExecutionRecord, error: str) -> None:
        await self._dispatch("on_execution_failed", record, error)


async def notify(notifier: NotifierProtocol, event: str, *args: Any) -> None:
    """Invoke a notifier hook, logging instead of raising on failure."""
    try:
        await getattr(notifier, event)(*args)
    except Exception as e:
        logger.error("Notifier hook failed",
                     notifier=type(notifier).__name__, hook=event, error=str(e))


def create_notifier(enabled: bool = True) -> NotifierProtocol:
    """LoggingNotifier when enabled, NullNotifier otherwise."""
    if enabled:
        return LoggingNotifier()
    logger.debug("Execution notifications disabled")
    return NullNotifier()
