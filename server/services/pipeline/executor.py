"""Workflow scheduler.

Runs a WorkflowDefinition to a terminal ExecutionRecord:

- sequential: one node at a time in topological order
- parallel: ready-set batches, members of a batch run concurrently
- hybrid: topological walk where a parallel-mode node starts a concurrent
  frontier of its parallel-mode siblings

Datasource nodes run first in every mode. Their array outputs extend the
initial input handed to root nodes.

A node is "settled" once it completed, failed under the ``continue`` policy,
was skipped as disabled, or already ran as a datasource. Cancellation is
observed at node and batch boundaries.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from constants import DATASOURCE_NODE_TYPES, is_datasource_type
from core.logging import bind_execution, get_logger, log_execution_time
from .cache import OutputCache
from .cancellation import CancellationSignals
from .errors import (
    ExecutionCancelled,
    GraphError,
    InvalidExecutionState,
    StepExecutionError,
    StepNotFound,
)
from .graph import ExecutionGraph, build_execution_graph
from .metrics import MetricsAggregator, current_rss
from .models import (
    ErrorHandling,
    ExecutionMetrics,
    ExecutionMode,
    ExecutionRecord,
    ExecutionStatus,
    NodeSnapshot,
    NodeStatus,
    RetryPolicy,
    StepExecutionContext,
    StepResult,
    WorkflowDefinition,
    WorkflowNode,
)
from .notifications import NotifierProtocol, NullNotifier, notify
from .registry import StepRegistryProtocol
from .resolver import InputResolver, SourceResolver
from .shapes import extract_array, item_count, merge_payloads, summarize_output
from .snapshots import SnapshotRecorder
from .steps import Step

logger = get_logger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by user"


@dataclass
class ExecutionRun:
    """Mutable scheduling state of one execution."""
    record: ExecutionRecord
    workflow: WorkflowDefinition
    initial_input: Any
    context: Dict[str, Any]
    aggregator: MetricsAggregator
    semaphore: asyncio.Semaphore
    graph: Optional[ExecutionGraph] = None
    settled: Set[str] = field(default_factory=set)

    def source_context(self, node: WorkflowNode) -> Dict[str, Any]:
        return {
            "execution_id": self.record.id,
            "workflow_id": self.workflow.id,
            "node_id": node.id,
            "document_id": self.record.document_id,
            "dataset_id": self.record.dataset_id,
            "user_id": self.context.get("user_id"),
        }


class WorkflowExecutor:
    """Schedules workflow nodes and records their results."""

    def __init__(self, registry: StepRegistryProtocol,
                 output_cache: OutputCache,
                 recorder: SnapshotRecorder,
                 signals: Optional[CancellationSignals] = None,
                 notifier: Optional[NotifierProtocol] = None,
                 source_resolvers: Optional[Dict[str, SourceResolver]] = None,
                 max_concurrency: int = 8,
                 node_timeout: Optional[float] = None,
                 datasource_types: Sequence[str] = DATASOURCE_NODE_TYPES,
                 environment: str = "development",
                 version: str = "1.0.0"):
        """Initialize executor.

        Args:
            registry: Resolves node types to steps
            output_cache: Two-tier store of node outputs
            recorder: Single writer of node snapshots (and the durable tier)
            signals: Cancellation flags, local-only when omitted
            notifier: Lifecycle event sink
            source_resolvers: Resolvers for non previous_node input sources
            max_concurrency: Upper bound on concurrently running batch members
            node_timeout: Per-attempt step timeout in seconds
            datasource_types: Node types executed before everything else
        """
        self.registry = registry
        self.output_cache = output_cache
        self.recorder = recorder
        self.store = recorder.store
        self.signals = signals or CancellationSignals()
        self.notifier = notifier or NullNotifier()
        self.resolver = InputResolver(output_cache, source_resolvers)
        self.max_concurrency = max_concurrency
        self.node_timeout = node_timeout
        self.datasource_types = frozenset(datasource_types)
        self.environment = environment
        self.version = version

    # =========================================================================
    # EXECUTION ENTRY POINT
    # =========================================================================

    async def execute_workflow(self, workflow: WorkflowDefinition,
                               input_data: Any = None,
                               context: Optional[Dict[str, Any]] = None,
                               record: Optional[ExecutionRecord] = None) -> ExecutionRecord:
        """Run a workflow to completion.

        Args:
            workflow: Definition to run
            input_data: Initial input for root nodes
            context: Optional execution_id, user_id, document_id, dataset_id,
                     trigger_source, trigger_data, parameters, metadata
            record: Pre-created PENDING record to adopt instead of creating one

        Returns:
            The terminal ExecutionRecord (completed, failed or cancelled)

        Raises:
            InvalidExecutionState: If an adopted record is not pending
        """
        context = dict(context or {})
        record = await self._begin(workflow, context, record)
        if record.is_terminal:
            return record

        run = ExecutionRun(
            record=record,
            workflow=workflow,
            initial_input=input_data,
            context=context,
            aggregator=MetricsAggregator(record.metrics, len(workflow.nodes)),
            semaphore=asyncio.Semaphore(self.max_concurrency),
        )
        with bind_execution(record.id, workflow.id):
            await self._run(run)
        return record

    async def _run(self, run: ExecutionRun) -> None:
        """Schedule every node and move the record to its terminal status."""
        record = run.record
        workflow = run.workflow
        mode = workflow.settings.execution_mode
        start_time = time.time()

        logger.info("Starting workflow execution",
                    node_count=len(workflow.nodes),
                    mode=mode.value)

        self.recorder.attach(record)
        try:
            run.graph = build_execution_graph(workflow.nodes, workflow.edges)
            self._skip_disabled(run)
            await self._run_datasources(run)

            if mode == ExecutionMode.PARALLEL:
                await self._run_parallel(run)
            elif mode == ExecutionMode.HYBRID:
                await self._run_hybrid(run)
            else:
                await self._run_sequential(run)

            # A request that arrived during the last node still wins
            await self._check_cancelled(run)
            await self._finish(run, ExecutionStatus.COMPLETED)

        except ExecutionCancelled:
            await self._finish(run, ExecutionStatus.CANCELLED)

        except (GraphError, StepExecutionError) as e:
            await self._finish(run, ExecutionStatus.FAILED, error=str(e))

        except asyncio.CancelledError:
            await self._finish(run, ExecutionStatus.CANCELLED)
            raise

        except Exception as e:
            logger.error("Workflow execution failed", error=str(e))
            await self._finish(run, ExecutionStatus.FAILED, error=str(e))

        finally:
            await self.output_cache.cleanup(record.id)
            self.recorder.detach(record.id)
            await self.signals.clear(record.id)
            log_execution_time(logger, "workflow_execution", start_time, time.time(),
                               status=record.status.value)

    async def _begin(self, workflow: WorkflowDefinition, context: Dict[str, Any],
                     record: Optional[ExecutionRecord]) -> ExecutionRecord:
        if record is None:
            record = ExecutionRecord(
                id=context.get("execution_id") or str(uuid.uuid4()),
                workflow_id=workflow.id,
                document_id=context.get("document_id"),
                dataset_id=context.get("dataset_id"),
                trigger_source=context.get("trigger_source", "manual"),
                trigger_data=context.get("trigger_data"),
                execution_context=self.build_execution_context(context),
            )
        elif record.status == ExecutionStatus.CANCELLED:
            logger.info("Execution cancelled before start", execution_id=record.id)
            await self.signals.clear(record.id)
            return record
        elif record.status != ExecutionStatus.PENDING:
            raise InvalidExecutionState(record.id, record.status.value, "start")

        record.status = ExecutionStatus.RUNNING
        record.started_at = time.time()
        record.metrics = ExecutionMetrics(total_nodes=len(workflow.nodes))
        await self.store.save_execution(record)
        return record

    def build_execution_context(self, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "user_id": context.get("user_id"),
            "environment": self.environment,
            "version": self.version,
            "parameters": dict(context.get("parameters") or {}),
        }

    async def _finish(self, run: ExecutionRun, status: ExecutionStatus,
                      error: Optional[str] = None) -> None:
        record = run.record
        if status == ExecutionStatus.FAILED and await self._cancel_requested(run):
            # The in-flight node failed after a cancel request; the run stays cancelled
            logger.info("Failure after cancellation ignored", error=error)
            status, error = ExecutionStatus.CANCELLED, None

        if status == ExecutionStatus.CANCELLED:
            signal = await self.signals.get(record.id) or {}
            record.cancellation_reason = (record.cancellation_reason
                                          or signal.get("reason") or DEFAULT_CANCEL_REASON)
            record.cancelled_by = record.cancelled_by or signal.get("cancelled_by")
            record.cancelled_at = record.cancelled_at or signal.get("cancelled_at") or time.time()

        record.status = status
        record.error = error
        record.completed_at = time.time()
        record.metrics = run.aggregator.finalize()
        await self.recorder.finalize(record)

        settings = run.workflow.settings
        if status == ExecutionStatus.COMPLETED:
            logger.info("Workflow execution completed",
                        execution_id=record.id,
                        completed_nodes=record.metrics.completed_nodes,
                        failed_nodes=record.metrics.failed_nodes)
            if settings.notify_on_completion:
                await notify(self.notifier, "on_execution_completed", record)
        elif status == ExecutionStatus.FAILED:
            logger.warning("Workflow execution failed", execution_id=record.id, error=error)
            if settings.notify_on_failure:
                await notify(self.notifier, "on_execution_failed", record, error or "")
        else:
            logger.info("Workflow execution cancelled",
                        execution_id=record.id, reason=record.cancellation_reason)

    # =========================================================================
    # SCHEDULING MODES
    # =========================================================================

    def _skip_disabled(self, run: ExecutionRun) -> None:
        for entry in run.graph.values():
            if not entry.node.enabled:
                run.settled.add(entry.id)
                run.aggregator.record_skipped()
                logger.info("Skipping disabled node", execution_id=run.record.id, node_id=entry.id)

    async def _run_datasources(self, run: ExecutionRun) -> None:
        """Run datasource nodes with empty input and fold their arrays into the initial input."""
        datasources = [
            entry.id for entry in run.graph.values()
            if entry.node.enabled and is_datasource_type(entry.node.type, self.datasource_types)
        ]
        collected: List[Any] = []
        for node_id in datasources:
            await self._check_cancelled(run)
            snapshot = await self._run_node(run, node_id, input_override=[])
            self._enforce_error_policy(run, [snapshot])
            if snapshot.status == NodeStatus.COMPLETED:
                output = await self.output_cache.get(run.record.id, node_id)
                collected.extend(extract_array(output) or [])

        if collected:
            if run.initial_input is None:
                run.initial_input = collected
            else:
                run.initial_input = merge_payloads(run.initial_input, collected).value

    async def _run_sequential(self, run: ExecutionRun) -> None:
        for node_id in run.graph.topological_order():
            if node_id in run.settled:
                continue
            await self._check_cancelled(run)
            snapshot = await self._run_node(run, node_id)
            self._enforce_error_policy(run, [snapshot])

    async def _run_parallel(self, run: ExecutionRun) -> None:
        for batch in run.graph.parallel_batches(run.settled):
            await self._check_cancelled(run)
            snapshots = await self._run_batch(run, batch)
            self._enforce_error_policy(run, snapshots)

    async def _run_hybrid(self, run: ExecutionRun) -> None:
        for node_id in run.graph.topological_order():
            if node_id in run.settled:
                continue
            await self._check_cancelled(run)
            if run.graph[node_id].node.is_parallel:
                batch = run.graph.parallel_frontier(node_id, run.settled)
                snapshots = await self._run_batch(run, batch)
            else:
                snapshots = [await self._run_node(run, node_id)]
            self._enforce_error_policy(run, snapshots)

    async def _run_batch(self, run: ExecutionRun, batch: List[str]) -> List[NodeSnapshot]:
        """Run batch members concurrently. Every member finishes before this returns."""
        if len(batch) == 1:
            return [await self._run_node(run, batch[0])]

        logger.info("Running parallel batch", execution_id=run.record.id, nodes=batch)

        async def guarded(node_id: str) -> NodeSnapshot:
            async with run.semaphore:
                return await self._run_node(run, node_id)

        results = await asyncio.gather(*(guarded(node_id) for node_id in batch),
                                       return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    def _enforce_error_policy(self, run: ExecutionRun, snapshots: List[NodeSnapshot]) -> None:
        if run.workflow.settings.error_handling != ErrorHandling.STOP:
            return
        for snapshot in snapshots:
            if snapshot.status == NodeStatus.FAILED:
                raise StepExecutionError(
                    snapshot.node_id, f"Node '{snapshot.node_name}' failed: {snapshot.error}"
                )

    async def _cancel_requested(self, run: ExecutionRun) -> bool:
        if run.record.status == ExecutionStatus.CANCELLED:
            return True
        return bool(await self.signals.get(run.record.id))

    async def _check_cancelled(self, run: ExecutionRun) -> None:
        if await self.signals.get(run.record.id):
            raise ExecutionCancelled(run.record.id)

    # =========================================================================
    # NODE EXECUTION
    # =========================================================================

    async def _run_node(self, run: ExecutionRun, node_id: str,
                        input_override: Any = None) -> NodeSnapshot:
        """Resolve input, run the step, record the snapshot and cache the output."""
        record = run.record
        entry = run.graph[node_id]
        node = entry.node
        error: Optional[str] = None

        input_data = input_override
        if input_data is None:
            try:
                input_data = await self.resolver.resolve(entry, run.initial_input,
                                                         run.source_context(node))
            except Exception as e:
                error = f"Input resolution failed: {e}"
                input_data = []

        snapshot = await self.recorder.start_node(record, node, input_data)
        await notify(self.notifier, "on_node_started", record.id, node.id, node.name)

        rss_before = current_rss()
        started = time.perf_counter()
        step: Optional[Step] = None
        result: Optional[StepResult] = None

        if error is None:
            try:
                step = self.registry.create_step_instance(node.type)
                if step is None:
                    raise StepNotFound(node.type)
                result = await self._invoke_with_retry(
                    step, node, input_data, self._step_context(run, node),
                    run.workflow.settings.retry_policy, snapshot,
                )
                if not result.success:
                    error = result.error or "Step reported failure"
            except (StepNotFound, StepExecutionError) as e:
                error = str(e)

        snapshot.metrics.processing_time = round((time.perf_counter() - started) * 1000, 3)
        snapshot.metrics.memory_delta = max(current_rss() - rss_before, 0)

        if error is None:
            raw_output = result.output_segments
            snapshot.metrics.output_count = item_count(raw_output)
            output_data = self._format_output(step, result, input_data, node)
            await self.recorder.finish_node(record, snapshot, NodeStatus.COMPLETED, output_data)
            await self.output_cache.store(record.id, node.id, raw_output, node.type)
        else:
            logger.warning("Node failed", execution_id=record.id, node_id=node.id, error=error)
            await self.recorder.finish_node(record, snapshot, NodeStatus.FAILED, error=error)

        run.aggregator.record_node(snapshot)
        await self.recorder.persist_record(record)
        run.settled.add(node.id)
        await notify(self.notifier, "on_node_completed", record.id, snapshot)
        return snapshot

    async def _invoke_with_retry(self, step: Step, node: WorkflowNode, input_data: Any,
                                 context: StepExecutionContext, policy: RetryPolicy,
                                 snapshot: NodeSnapshot) -> StepResult:
        """Invoke a step, retrying exceptions and reported failures per the policy.

        Returns the last StepResult (possibly unsuccessful).

        Raises:
            StepExecutionError: If the final attempt raised or timed out
        """
        attempt = 0
        while True:
            snapshot.attempts = attempt + 1
            result: Optional[StepResult] = None
            cause: Optional[BaseException] = None
            try:
                result = StepResult.coerce(await self._invoke(step, node, input_data, context))
                failure = None if result.success else (result.error or "Step reported failure")
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as e:
                cause = e
                failure = f"Node {node.id} timed out after {self.node_timeout}s"
            except Exception as e:
                cause = e
                failure = str(e) or type(e).__name__

            if failure is None:
                return result

            if not policy.should_retry(attempt):
                if result is not None:
                    return result
                raise StepExecutionError(node.id, failure, cause)

            delay = policy.calculate_delay(attempt)
            logger.info("Retrying node after failure",
                        node_id=node.id,
                        attempt=attempt + 1,
                        max_retries=policy.max_retries,
                        delay=delay,
                        error=failure[:100])
            await asyncio.sleep(delay)
            attempt += 1

    async def _invoke(self, step: Step, node: WorkflowNode, input_data: Any,
                      context: StepExecutionContext) -> Any:
        call = step.execute(input_data, dict(node.config), context)
        if self.node_timeout:
            return await asyncio.wait_for(call, timeout=self.node_timeout)
        return await call

    def _step_context(self, run: ExecutionRun, node: WorkflowNode) -> StepExecutionContext:
        return StepExecutionContext(
            execution_id=run.record.id,
            workflow_id=run.workflow.id,
            node_id=node.id,
            node_name=node.name,
            document_id=run.record.document_id,
            dataset_id=run.record.dataset_id,
            user_id=run.context.get("user_id"),
            metadata=dict(run.context.get("metadata") or {}),
            logger=logger.bind(execution_id=run.record.id, node_id=node.id),
        )

    def _format_output(self, step: Step, result: StepResult, input_data: Any,
                       node: WorkflowNode) -> Any:
        """Step-formatted output, or the generic summary envelope."""
        formatter = getattr(step, "format_output", None)
        if callable(formatter):
            try:
                return formatter(result, input_data)
            except Exception as e:
                logger.warning("Output formatter failed, storing summary",
                               node_id=node.id, error=str(e))
        return summarize_output(result.output_segments)
