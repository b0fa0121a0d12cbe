"""Execution metrics aggregation."""

import psutil

from core.logging import get_logger
from .models import ExecutionMetrics, NodeSnapshot, NodeStatus

logger = get_logger(__name__)


def current_rss() -> int:
    """Resident set size of this process in bytes."""
    try:
        return psutil.Process().memory_info().rss
    except psutil.Error as e:
        logger.debug("RSS sample unavailable", error=str(e))
        return 0


class MetricsAggregator:
    """Running totals over node snapshots, updated as nodes finish.

    ``total_duration`` sums node processing times, so parallel batches count
    each node's own time rather than wall clock.
    """

    def __init__(self, metrics: ExecutionMetrics, total_nodes: int):
        self.metrics = metrics
        self.metrics.total_nodes = total_nodes

    def record_node(self, snapshot: NodeSnapshot) -> None:
        m = self.metrics
        if snapshot.status == NodeStatus.COMPLETED:
            m.completed_nodes += 1
        elif snapshot.status == NodeStatus.FAILED:
            m.failed_nodes += 1

        m.total_duration += snapshot.metrics.processing_time
        m.total_data_processed += snapshot.metrics.input_count
        m.peak_memory_usage = max(m.peak_memory_usage, snapshot.metrics.memory_delta)

        executed = m.completed_nodes + m.failed_nodes
        m.average_node_duration = m.total_duration / executed if executed else 0.0

    def record_skipped(self) -> None:
        self.metrics.skipped_nodes += 1

    def finalize(self) -> ExecutionMetrics:
        m = self.metrics
        seconds = m.total_duration / 1000
        m.data_throughput = m.total_data_processed / seconds if seconds > 0 else 0.0
        # Per-node CPU sampling is not collected
        m.average_cpu_usage = 0.0
        return m
