"""Pipeline engine state models.

Workflow definitions are parsed once into dataclasses; execution records and
node snapshots are JSON-serializable so any ExecutionStore can persist them.
Timestamps are epoch seconds (float), durations are milliseconds.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class ExecutionStatus(str, Enum):
    """Workflow execution states.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> FAILED
                           -> CANCELLED
    """
    PENDING = "pending"        # Created, not started (pre-created records)
    RUNNING = "running"        # Scheduler is dispatching nodes
    COMPLETED = "completed"    # Every reachable enabled node ran
    FAILED = "failed"          # Graph error or first failure under "stop"
    CANCELLED = "cancelled"    # Cancelled out-of-band

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset([
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
])


class NodeStatus(str, Enum):
    """Per-node states recorded on snapshots."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionMode(str, Enum):
    """Workflow-level scheduling strategy."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


class NodeExecutionMode(str, Enum):
    """Per-node mode, only consulted in hybrid scheduling."""
    PARALLEL = "parallel"
    CONSECUTIVE = "consecutive"


class ErrorHandling(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"


class SourceType(str, Enum):
    PREVIOUS_NODE = "previous_node"
    DATASET = "dataset"
    DOCUMENT = "document"
    SEGMENT = "segment"
    FILE = "file"
    API = "api"


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    """Read a key accepting both snake_case and camelCase spellings."""
    if snake in data:
        return data[snake]
    return data.get(camel, default)


TRUE_STRINGS = frozenset(["true", "1", "yes", "on"])
FALSE_STRINGS = frozenset(["false", "0", "no", "off", ""])


def _as_bool(value: Any, default: bool) -> bool:
    """Parse a flag that may arrive as a bool, a number or a string.

    Raises:
        ValueError: On a string that is not a recognized boolean
    """
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ValueError(f"Invalid boolean value: {value!r}")
    return bool(value)


# =============================================================================
# WORKFLOW DEFINITION
# =============================================================================

@dataclass
class RetryPolicy:
    """Retry configuration for step invocation.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_retries: int = 0
    initial_delay: float = 1.0       # seconds
    max_delay: float = 60.0          # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=data.get("max_retries", 0),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 60.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
        )


@dataclass
class InputSource:
    """Where a node reads its input from.

    ``filters`` is either a mapping of field -> expected value (all must match)
    or a list of ``{field, operator, value}`` conditions. ``mapping`` projects
    each item to ``{target_key: item[source_key]}``.
    """
    type: str = SourceType.PREVIOUS_NODE.value
    node_id: Optional[str] = None
    filters: Optional[Any] = None
    mapping: Optional[Dict[str, str]] = None
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "node_id": self.node_id,
            "filters": self.filters,
            "mapping": self.mapping,
            "config": self.config,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InputSource":
        known = {"type", "node_id", "nodeId", "filters", "mapping", "config"}
        # Source-specific locators (datasetId, apiUrl, ...) travel in config
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(
            type=data.get("type", SourceType.PREVIOUS_NODE.value),
            node_id=_pick(data, "node_id", "nodeId"),
            filters=data.get("filters") or None,
            mapping=data.get("mapping") or None,
            config={**extra, **(data.get("config") or {})},
        )


@dataclass
class WorkflowNode:
    id: str
    type: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    execution_mode: NodeExecutionMode = NodeExecutionMode.CONSECUTIVE
    enabled: bool = True
    input_sources: List[InputSource] = field(default_factory=list)

    def __post_init__(self):
        if not self.name:
            self.name = self.id

    @property
    def is_parallel(self) -> bool:
        return self.execution_mode == NodeExecutionMode.PARALLEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "config": self.config,
            "execution_mode": self.execution_mode.value,
            "enabled": self.enabled,
            "input_sources": [s.to_dict() for s in self.input_sources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowNode":
        return cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            config=dict(data.get("config") or {}),
            execution_mode=NodeExecutionMode(
                _pick(data, "execution_mode", "executionMode") or NodeExecutionMode.CONSECUTIVE.value
            ),
            enabled=_as_bool(data.get("enabled"), True),
            input_sources=[
                InputSource.from_dict(s) for s in (_pick(data, "input_sources", "inputSources") or [])
            ],
        )


@dataclass
class WorkflowEdge:
    source: str
    target: str
    id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.id or f"{self.source}->{self.target}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowEdge":
        return cls(source=data["source"], target=data["target"], id=data.get("id"))


@dataclass
class WorkflowSettings:
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    error_handling: ErrorHandling = ErrorHandling.STOP
    max_retries: int = 0
    retry_delay: float = 1.0
    notify_on_completion: bool = True
    notify_on_failure: bool = True

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, initial_delay=self.retry_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_mode": self.execution_mode.value,
            "error_handling": self.error_handling.value,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "notify_on_completion": self.notify_on_completion,
            "notify_on_failure": self.notify_on_failure,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowSettings":
        data = data or {}
        return cls(
            execution_mode=ExecutionMode(_pick(data, "execution_mode", "executionMode", "sequential")),
            error_handling=ErrorHandling(_pick(data, "error_handling", "errorHandling", "stop")),
            max_retries=int(_pick(data, "max_retries", "maxRetries", 0)),
            retry_delay=float(_pick(data, "retry_delay", "retryDelay", 1.0)),
            notify_on_completion=_as_bool(_pick(data, "notify_on_completion", "notifyOnCompletion", None), True),
            notify_on_failure=_as_bool(_pick(data, "notify_on_failure", "notifyOnFailure", None), True),
        )


@dataclass
class WorkflowDefinition:
    """Immutable per execution: nodes, edges and scheduling settings."""
    id: str
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = field(default_factory=list)
    name: str = ""
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            nodes=[WorkflowNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[WorkflowEdge.from_dict(e) for e in data.get("edges", [])],
            settings=WorkflowSettings.from_dict(data.get("settings")),
        )


# =============================================================================
# STEP CONTRACT
# =============================================================================

@dataclass
class StepExecutionContext:
    """Context handed to every step invocation."""
    execution_id: str
    workflow_id: str
    node_id: str
    node_name: str
    document_id: Optional[str] = None
    dataset_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    logger: Any = None


@dataclass
class StepResult:
    """Normalized result of ``Step.execute``."""
    success: bool
    output_segments: Any = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "success": self.success,
            "output_segments": self.output_segments,
            "metrics": self.metrics,
            **self.extra,
        }
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def coerce(cls, raw: Any) -> "StepResult":
        """Accept a StepResult or the plain dict shape steps may return."""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            return cls(success=False, error=f"Step returned unsupported result type: {type(raw).__name__}")
        known = {"success", "output_segments", "outputSegments", "metrics", "error"}
        output = _pick(raw, "output_segments", "outputSegments")
        return cls(
            success=bool(raw.get("success", False)),
            output_segments=[] if output is None else output,
            metrics=dict(raw.get("metrics") or {}),
            error=raw.get("error"),
            extra={k: v for k, v in raw.items() if k not in known},
        )


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}

    @classmethod
    def coerce(cls, raw: Any) -> "ValidationResult":
        if isinstance(raw, cls):
            return raw
        raw = raw or {}
        return cls(
            is_valid=bool(_pick(raw, "is_valid", "isValid", False)),
            errors=list(raw.get("errors") or []),
            warnings=list(raw.get("warnings") or []),
        )


# =============================================================================
# EXECUTION RECORD
# =============================================================================

@dataclass
class NodeMetrics:
    processing_time: float = 0.0     # ms
    memory_delta: int = 0            # bytes, RSS after - before
    data_size: int = 0               # bytes of serialized input
    input_count: int = 0
    output_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processing_time": self.processing_time,
            "memory_delta": self.memory_delta,
            "data_size": self.data_size,
            "input_count": self.input_count,
            "output_count": self.output_count,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NodeMetrics":
        data = data or {}
        return cls(
            processing_time=data.get("processing_time", 0.0),
            memory_delta=data.get("memory_delta", 0),
            data_size=data.get("data_size", 0),
            input_count=data.get("input_count", 0),
            output_count=data.get("output_count", 0),
        )


@dataclass
class NodeSnapshot:
    """Recorded input/output/status of one node within one execution."""
    node_id: str
    node_name: str
    node_type: str = ""
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_ms: float = 0.0
    input_data: Any = None
    output_data: Any = None
    metrics: NodeMetrics = field(default_factory=NodeMetrics)
    error: Optional[str] = None
    progress: int = 0
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "node_type": self.node_type,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "metrics": self.metrics.to_dict(),
            "error": self.error,
            "progress": self.progress,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSnapshot":
        return cls(
            node_id=data["node_id"],
            node_name=data.get("node_name", data["node_id"]),
            node_type=data.get("node_type", ""),
            status=NodeStatus(data.get("status", NodeStatus.PENDING.value)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms", 0.0),
            input_data=data.get("input_data"),
            output_data=data.get("output_data"),
            metrics=NodeMetrics.from_dict(data.get("metrics")),
            error=data.get("error"),
            progress=data.get("progress", 0),
            attempts=data.get("attempts", 0),
        )


@dataclass
class ExecutionMetrics:
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    skipped_nodes: int = 0
    total_duration: float = 0.0          # ms, sum of node processing times
    average_node_duration: float = 0.0   # ms
    total_data_processed: int = 0        # input items across executed nodes
    peak_memory_usage: int = 0           # bytes, largest per-node delta
    average_cpu_usage: float = 0.0
    data_throughput: float = 0.0         # items per second

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_nodes": self.total_nodes,
            "completed_nodes": self.completed_nodes,
            "failed_nodes": self.failed_nodes,
            "skipped_nodes": self.skipped_nodes,
            "total_duration": self.total_duration,
            "average_node_duration": self.average_node_duration,
            "total_data_processed": self.total_data_processed,
            "peak_memory_usage": self.peak_memory_usage,
            "average_cpu_usage": self.average_cpu_usage,
            "data_throughput": self.data_throughput,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionMetrics":
        data = data or {}
        return cls(**{k: data[k] for k in cls().to_dict() if k in data})


@dataclass
class ExecutionRecord:
    """One run of a workflow.

    Created before scheduling begins (or adopted when pre-created by a caller),
    terminal once status reaches completed, failed or cancelled.
    """
    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    node_snapshots: List[NodeSnapshot] = field(default_factory=list)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    error: Optional[str] = None

    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[float] = None

    document_id: Optional[str] = None
    dataset_id: Optional[str] = None
    trigger_source: Optional[str] = None
    trigger_data: Optional[Dict[str, Any]] = None
    execution_context: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def get_snapshot(self, node_id: str) -> Optional[NodeSnapshot]:
        return next((s for s in self.node_snapshots if s.node_id == node_id), None)

    def upsert_snapshot(self, snapshot: NodeSnapshot) -> None:
        """Replace the snapshot for the same node, or append a new one."""
        for i, existing in enumerate(self.node_snapshots):
            if existing.node_id == snapshot.node_id:
                self.node_snapshots[i] = snapshot
                return
        self.node_snapshots.append(snapshot)

    def apply(self, partial: Dict[str, Any]) -> None:
        """Apply a partial update produced by ``serialize_partial`` or raw values."""
        for key, value in partial.items():
            if key == "status":
                value = ExecutionStatus(value)
            elif key == "node_snapshots":
                value = [s if isinstance(s, NodeSnapshot) else NodeSnapshot.from_dict(s) for s in value]
            elif key == "metrics" and not isinstance(value, ExecutionMetrics):
                value = ExecutionMetrics.from_dict(value)
            setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "node_snapshots": [s.to_dict() for s in self.node_snapshots],
            "metrics": self.metrics.to_dict(),
            "error": self.error,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at,
            "document_id": self.document_id,
            "dataset_id": self.dataset_id,
            "trigger_source": self.trigger_source,
            "trigger_data": self.trigger_data,
            "execution_context": self.execution_context,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionRecord":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            node_snapshots=[NodeSnapshot.from_dict(s) for s in data.get("node_snapshots") or []],
            metrics=ExecutionMetrics.from_dict(data.get("metrics")),
            error=data.get("error"),
            cancellation_reason=data.get("cancellation_reason"),
            cancelled_by=data.get("cancelled_by"),
            cancelled_at=data.get("cancelled_at"),
            document_id=data.get("document_id"),
            dataset_id=data.get("dataset_id"),
            trigger_source=data.get("trigger_source"),
            trigger_data=data.get("trigger_data"),
            execution_context=data.get("execution_context"),
            created_at=data.get("created_at") or time.time(),
        )


RECORD_FIELDS = frozenset(ExecutionRecord.__dataclass_fields__)


def serialize_partial(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a partial record update to JSON-ready values.

    Raises:
        KeyError: If a key is not an ExecutionRecord field
    """
    out: Dict[str, Any] = {}
    for key, value in partial.items():
        if key not in RECORD_FIELDS or key == "id":
            raise KeyError(f"Not an updatable execution field: {key}")
        if isinstance(value, Enum):
            value = value.value
        elif key == "node_snapshots":
            value = [s.to_dict() if isinstance(s, NodeSnapshot) else s for s in value]
        elif isinstance(value, ExecutionMetrics):
            value = value.to_dict()
        out[key] = value
    return out
