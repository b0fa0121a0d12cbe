"""Exception hierarchy for the pipeline engine.

Graph errors are always fatal to an execution. Step errors are recorded on the
node snapshot and only abort the run under the ``stop`` error policy.
CacheWriteConflict is built and logged by the output cache, never raised.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all engine errors."""


class GraphError(PipelineError):
    """The workflow graph admits no valid schedule."""

    CYCLE = "Cycle"
    DEADLOCK = "Deadlock"
    UNKNOWN_REFERENCE = "UnknownReference"
    DUPLICATE_NODE = "DuplicateNode"

    def __init__(self, kind: str, message: str, node_id: Optional[str] = None):
        self.kind = kind
        self.node_id = node_id
        super().__init__(message)

    def __str__(self) -> str:
        return f"GraphError:{self.kind}: {self.args[0]}"


class CycleError(GraphError):
    def __init__(self, node_id: str):
        super().__init__(self.CYCLE, f"Circular dependency detected at node {node_id}", node_id)


class DeadlockError(GraphError):
    def __init__(self, remaining):
        self.remaining = sorted(remaining)
        super().__init__(
            self.DEADLOCK,
            f"No runnable nodes while {len(self.remaining)} remain: {', '.join(self.remaining)}",
        )


class UnknownReferenceError(GraphError):
    def __init__(self, node_id: str, edge: str):
        self.edge = edge
        super().__init__(self.UNKNOWN_REFERENCE, f"Edge {edge} references unknown node {node_id}", node_id)


class StepNotFound(PipelineError):
    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Step type not found: {step_type}")


class StepExecutionError(PipelineError):
    """Wraps whatever a step raised, or a step that reported failure."""

    def __init__(self, node_id: str, message: str, cause: Optional[BaseException] = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(message)


class CacheWriteConflict(PipelineError):
    """A durable write would replace an already formatted node output."""

    def __init__(self, execution_id: str, node_id: str, existing_shape: str):
        self.execution_id = execution_id
        self.node_id = node_id
        self.existing_shape = existing_shape
        super().__init__(
            f"Refusing to overwrite formatted output ({existing_shape}) "
            f"for node {node_id} in execution {execution_id}"
        )


class ExecutionNotFound(PipelineError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution not found: {execution_id}")


class InvalidExecutionState(PipelineError):
    def __init__(self, execution_id: str, status: str, action: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Cannot {action} execution {execution_id} with status {status}")


class ExecutionCancelled(PipelineError):
    """Raised inside the scheduler to unwind at a node boundary."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} was cancelled")
