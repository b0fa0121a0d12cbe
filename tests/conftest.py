"""Pytest configuration and fixtures.

``server/`` is put on the import path by ``[tool.pytest.ini_options]``
so modules import the way the engine does at runtime (``from core...``).
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from services.pipeline.cache import OutputCache
from services.pipeline.cancellation import CancellationSignals
from services.pipeline.executor import WorkflowExecutor
from services.pipeline.models import StepExecutionContext, WorkflowDefinition
from services.pipeline.orchestrator import WorkflowOrchestrator
from services.pipeline.registry import StepRegistry
from services.pipeline.snapshots import SnapshotRecorder
from services.pipeline.steps import BaseStep
from services.pipeline.store import CacheExecutionStore


# =============================================================================
# TEST STEPS
# =============================================================================

class Journal:
    """Shared record of step invocations across one test."""

    def __init__(self):
        self.order: List[str] = []
        self.inputs: Dict[str, Any] = {}
        self.contexts: Dict[str, StepExecutionContext] = {}
        self.attempts: Dict[str, int] = {}
        self.running: set = set()
        self.max_active = 0
        self.overlaps: List[frozenset] = []

    def started(self, node_id: str, input_data: Any, context: StepExecutionContext) -> None:
        self.order.append(node_id)
        self.inputs[node_id] = input_data
        self.contexts[node_id] = context
        self.attempts[node_id] = self.attempts.get(node_id, 0) + 1
        self.running.add(node_id)
        self.max_active = max(self.max_active, len(self.running))
        self.overlaps.append(frozenset(self.running))

    def finished(self, node_id: str) -> None:
        self.running.discard(node_id)

    def ran_together(self, *node_ids: str) -> bool:
        wanted = set(node_ids)
        return any(wanted <= overlap for overlap in self.overlaps)


class ScriptedStep:
    """Plain step object (no BaseStep) driven by constructor arguments.

    Without ``format_output`` its snapshot output is the summary envelope.
    """

    def __init__(self, journal: Journal,
                 transform: Optional[Callable[[Any, Dict[str, Any], StepExecutionContext], Any]] = None,
                 delay: float = 0.0,
                 error: Optional[Exception] = None,
                 report_failure: bool = False,
                 fail_times: int = 0):
        self.journal = journal
        self.transform = transform
        self.delay = delay
        self.error = error
        self.report_failure = report_failure
        self.fail_times = fail_times

    async def execute(self, input_data: Any, config: Dict[str, Any],
                      context: StepExecutionContext) -> Dict[str, Any]:
        self.journal.started(context.node_id, input_data, context)
        try:
            delay = config.get("delay", self.delay)
            if delay:
                await asyncio.sleep(delay)
            if self.error is not None:
                raise self.error
            if self.journal.attempts[context.node_id] <= self.fail_times:
                raise RuntimeError(f"transient failure {self.journal.attempts[context.node_id]}")
            if self.report_failure:
                return {"success": False, "error": "reported failure"}
            output = self.transform(input_data, config, context) if self.transform else input_data
            return {"success": True, "outputSegments": output}
        finally:
            self.journal.finished(context.node_id)

    async def validate(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return {"isValid": True}


def append_node_id(input_data: Any, config: Dict[str, Any], context: StepExecutionContext) -> List[Any]:
    items = input_data if isinstance(input_data, list) else [input_data]
    return items + [context.node_id]


def emit_items(input_data: Any, config: Dict[str, Any], context: StepExecutionContext) -> Any:
    return config.get("items", [{"id": f"{context.node_id}-1"}, {"id": f"{context.node_id}-2"}])


class UppercaseStep(BaseStep):
    """BaseStep subclass: uppercases the ``text`` field of every item."""

    step_type = "uppercase"
    step_name = "Uppercase"

    async def execute_step(self, items, config, context):
        field_name = config.get("field", "text")
        return [{**item, field_name: str(item.get(field_name, "")).upper()} for item in items]

    async def validate(self, config):
        if "field" in config and not isinstance(config["field"], str):
            return {"isValid": False, "errors": ["field must be a string"]}
        return {"isValid": True}


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self.fail = fail

    async def on_node_started(self, execution_id, node_id, node_name):
        self.events.append(("node_started", node_id))
        if self.fail:
            raise RuntimeError("notifier down")

    async def on_node_completed(self, execution_id, snapshot):
        self.events.append(("node_completed", snapshot.node_id, snapshot.status.value))
        if self.fail:
            raise RuntimeError("notifier down")

    async def on_execution_completed(self, record):
        self.events.append(("execution_completed", record.id))

    async def on_execution_failed(self, record, error):
        self.events.append(("execution_failed", record.id, error))

    def names(self, kind: str) -> List[str]:
        return [event[1] for event in self.events if event[0] == kind]


def build_workflow(nodes: List[Any], edges: List[tuple] = (),
                   workflow_id: str = "wf-test", **settings: Any) -> WorkflowDefinition:
    """Workflow from ``(id, type)`` tuples or node dicts and ``(source, target)`` edges."""
    return WorkflowDefinition.from_dict({
        "id": workflow_id,
        "name": "Test workflow",
        "nodes": [n if isinstance(n, dict) else {"id": n[0], "type": n[1]} for n in nodes],
        "edges": [{"source": s, "target": t} for s, t in edges],
        "settings": settings,
    })


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and the working directory."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        redis_enabled=False,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
async def cache_service(settings):
    cache = CacheService(settings)
    await cache.startup()
    yield cache
    await cache.shutdown()


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def cache_store(cache_service):
    return CacheExecutionStore(cache_service)


@pytest.fixture
def journal():
    return Journal()


@pytest.fixture
def registry(journal):
    steps = StepRegistry()
    steps.register("echo", lambda: ScriptedStep(journal))
    steps.register("mark", lambda: ScriptedStep(journal, transform=append_node_id))
    steps.register("slow", lambda: ScriptedStep(journal, transform=append_node_id, delay=0.05))
    steps.register("datasource", lambda: ScriptedStep(journal, transform=emit_items))
    steps.register("emit", lambda: ScriptedStep(journal, transform=emit_items))
    steps.register("boom", lambda: ScriptedStep(journal, error=RuntimeError("boom")))
    steps.register("reject", lambda: ScriptedStep(journal, report_failure=True))
    steps.register("flaky", lambda: ScriptedStep(journal, transform=append_node_id, fail_times=2))
    steps.register("uppercase", UppercaseStep)
    return steps


@pytest.fixture
def recorder(cache_store):
    return SnapshotRecorder(cache_store)


@pytest.fixture
def output_cache(recorder):
    return OutputCache(recorder, threshold=1000, max_memory_nodes=10)


@pytest.fixture
def signals(cache_service):
    return CancellationSignals(cache_service)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def executor(registry, output_cache, recorder, signals, notifier):
    return WorkflowExecutor(
        registry,
        output_cache,
        recorder,
        signals=signals,
        notifier=notifier,
        max_concurrency=8,
    )


@pytest.fixture
def orchestrator(executor, cache_store, output_cache, signals):
    return WorkflowOrchestrator(executor, cache_store, output_cache, signals)


@pytest.fixture
def make_workflow():
    return build_workflow
