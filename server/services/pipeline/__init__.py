"""Workflow pipeline engine package.

Runs user-defined node graphs against item collections:
- Dependency graph with sequential, parallel and hybrid scheduling
- Per-node input resolution with filters, mapping and shape-aware merging
- Two-tier output cache (bounded memory + execution record)
- Node snapshots and execution metrics persisted after every node
- Cancellation, retries and stop/continue error policies
"""

from .models import (
    ExecutionStatus,
    NodeStatus,
    ExecutionMode,
    NodeExecutionMode,
    ErrorHandling,
    SourceType,
    RetryPolicy,
    InputSource,
    WorkflowNode,
    WorkflowEdge,
    WorkflowSettings,
    WorkflowDefinition,
    StepExecutionContext,
    StepResult,
    ValidationResult,
    NodeMetrics,
    NodeSnapshot,
    ExecutionMetrics,
    ExecutionRecord,
)
from .errors import (
    PipelineError,
    GraphError,
    CycleError,
    DeadlockError,
    UnknownReferenceError,
    StepNotFound,
    StepExecutionError,
    CacheWriteConflict,
    ExecutionNotFound,
    InvalidExecutionState,
    ExecutionCancelled,
)
from .graph import ExecutionGraph, ExecutionGraphNode, build_execution_graph
from .cache import OutputCache
from .snapshots import SnapshotRecorder
from .metrics import MetricsAggregator
from .resolver import InputResolver, SourceResolver
from .steps import Step, BaseStep
from .registry import StepRegistry
from .store import ExecutionStore, DatabaseExecutionStore, CacheExecutionStore
from .notifications import (
    NotifierProtocol,
    NullNotifier,
    LoggingNotifier,
    CompositeNotifier,
    create_notifier,
)
from .cancellation import CancellationSignals
from .executor import WorkflowExecutor
from .orchestrator import WorkflowOrchestrator

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeStatus",
    "ExecutionMode",
    "NodeExecutionMode",
    "ErrorHandling",
    "SourceType",
    "RetryPolicy",
    "InputSource",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowSettings",
    "WorkflowDefinition",
    "StepExecutionContext",
    "StepResult",
    "ValidationResult",
    "NodeMetrics",
    "NodeSnapshot",
    "ExecutionMetrics",
    "ExecutionRecord",
    # Errors
    "PipelineError",
    "GraphError",
    "CycleError",
    "DeadlockError",
    "UnknownReferenceError",
    "StepNotFound",
    "StepExecutionError",
    "CacheWriteConflict",
    "ExecutionNotFound",
    "InvalidExecutionState",
    "ExecutionCancelled",
    # Graph
    "ExecutionGraph",
    "ExecutionGraphNode",
    "build_execution_graph",
    # Cache, snapshots, metrics
    "OutputCache",
    "SnapshotRecorder",
    "MetricsAggregator",
    # Input resolution
    "InputResolver",
    "SourceResolver",
    # Steps
    "Step",
    "BaseStep",
    "StepRegistry",
    # Stores
    "ExecutionStore",
    "DatabaseExecutionStore",
    "CacheExecutionStore",
    # Notifications
    "NotifierProtocol",
    "NullNotifier",
    "LoggingNotifier",
    "CompositeNotifier",
    "create_notifier",
    # Scheduling
    "CancellationSignals",
    "WorkflowExecutor",
    "WorkflowOrchestrator",
]
