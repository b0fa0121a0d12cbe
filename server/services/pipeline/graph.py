"""Execution graph construction and ordering.

The graph is built once per execution from the workflow's nodes and edges and
is never mutated afterwards. Cycle detection happens lazily in
``topological_order`` rather than at build time, so a graph is traversed only
once before scheduling.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from core.logging import get_logger
from .errors import CycleError, DeadlockError, GraphError, UnknownReferenceError
from .models import WorkflowEdge, WorkflowNode

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionGraphNode:
    """A workflow node plus its upstream and downstream node ids."""
    node: WorkflowNode
    dependencies: Tuple[str, ...] = ()
    dependents: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.node.id

    def is_ready(self, settled: Set[str]) -> bool:
        return all(dep in settled for dep in self.dependencies)


class ExecutionGraph:
    """Read-only adjacency view over one workflow's nodes."""

    def __init__(self, entries: Dict[str, ExecutionGraphNode]):
        self._entries = entries

    def __getitem__(self, node_id: str) -> ExecutionGraphNode:
        return self._entries[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, node_id: str) -> Optional[ExecutionGraphNode]:
        return self._entries.get(node_id)

    def values(self) -> Iterable[ExecutionGraphNode]:
        return self._entries.values()

    @property
    def roots(self) -> List[str]:
        return [node_id for node_id, entry in self._entries.items() if not entry.dependencies]

    def topological_order(self) -> List[str]:
        """Depth-first order placing every node after all of its dependencies.

        Nodes are visited in declaration order and dependencies in edge order,
        so the result is deterministic.

        Raises:
            CycleError: If a node is reached again while still being visited
        """
        visited: Set[str] = set()
        visiting: Set[str] = set()
        order: List[str] = []

        for start in self._entries:
            if start in visited:
                continue
            # Explicit stack of (node_id, iterator over its dependencies)
            visiting.add(start)
            stack = [(start, iter(self._entries[start].dependencies))]
            while stack:
                node_id, deps = stack[-1]
                dep = next(deps, None)
                if dep is None:
                    stack.pop()
                    visiting.discard(node_id)
                    visited.add(node_id)
                    order.append(node_id)
                    continue
                if dep in visiting:
                    raise CycleError(dep)
                if dep in visited:
                    continue
                visiting.add(dep)
                stack.append((dep, iter(self._entries[dep].dependencies)))

        return order

    def ready_nodes(self, settled: Set[str], pending: Iterable[str]) -> List[str]:
        """Pending nodes whose dependencies are all settled, in graph order."""
        pending = set(pending)
        return [
            node_id for node_id, entry in self._entries.items()
            if node_id in pending and node_id not in settled and entry.is_ready(settled)
        ]

    def parallel_batches(self, settled: Set[str]) -> Iterator[List[str]]:
        """Yield ready-set batches for parallel mode.

        ``settled`` is read again after each batch, so the caller must add
        every node of a yielded batch to it before asking for the next one.

        Raises:
            DeadlockError: If nodes remain but none of them is ready
        """
        remaining = [node_id for node_id in self._entries if node_id not in settled]
        while remaining:
            batch = self.ready_nodes(settled, remaining)
            if not batch:
                raise DeadlockError(remaining)
            yield batch
            remaining = [node_id for node_id in remaining if node_id not in settled]

    def parallel_frontier(self, node_id: str, settled: Set[str]) -> List[str]:
        """Collect the concurrent batch a parallel-mode node starts in hybrid mode.

        Starting from ``node_id``, walks to the dependents of each member's
        upstream nodes (its siblings) and keeps every enabled, parallel-mode,
        dependency-satisfied node not yet settled. Root nodes are siblings of
        each other. A dependent of a member is never ready while that member
        is pending, so growth happens through shared upstream nodes.
        """
        entry = self._entries.get(node_id)
        if entry is None or not entry.node.is_parallel:
            return [node_id]

        def eligible(candidate: str) -> bool:
            info = self._entries[candidate]
            return (
                candidate not in settled
                and info.node.enabled
                and info.node.is_parallel
                and info.is_ready(settled)
            )

        frontier: List[str] = []
        seen: Set[str] = set()
        queue = [node_id]
        while queue:
            current = queue.pop(0)
            if current in seen:
                continue
            seen.add(current)
            if current != node_id and not eligible(current):
                continue
            frontier.append(current)

            upstream = self._entries[current].dependencies
            siblings = (
                [d for dep in upstream for d in self._entries[dep].dependents]
                if upstream else self.roots
            )
            queue.extend(s for s in siblings if s not in seen)
            queue.extend(d for d in self._entries[current].dependents if d not in seen)

        order = {nid: i for i, nid in enumerate(self._entries)}
        return sorted(frontier, key=order.__getitem__)


def build_execution_graph(nodes: List[WorkflowNode], edges: List[WorkflowEdge],
                          strict: bool = True) -> ExecutionGraph:
    """Build the adjacency structure for a workflow.

    Args:
        nodes: Workflow nodes, ids must be unique
        edges: Directed data-flow links between node ids
        strict: Reject edges naming unknown nodes instead of skipping them

    Raises:
        GraphError: On duplicate node ids
        UnknownReferenceError: On an edge naming a missing node (strict only)
    """
    dependencies: Dict[str, List[str]] = {}
    dependents: Dict[str, List[str]] = {}
    by_id: Dict[str, WorkflowNode] = {}

    for node in nodes:
        if node.id in by_id:
            raise GraphError(GraphError.DUPLICATE_NODE, f"Duplicate node id {node.id}", node.id)
        by_id[node.id] = node
        dependencies[node.id] = []
        dependents[node.id] = []

    for edge in edges:
        missing = next((ref for ref in (edge.source, edge.target) if ref not in by_id), None)
        if missing is not None:
            if strict:
                raise UnknownReferenceError(missing, edge.label)
            logger.warning("Skipping edge with unknown node", edge=edge.label, node_id=missing)
            continue
        if edge.target not in dependents[edge.source]:
            dependents[edge.source].append(edge.target)
        if edge.source not in dependencies[edge.target]:
            dependencies[edge.target].append(edge.source)

    entries = {
        node_id: ExecutionGraphNode(
            node=node,
            dependencies=tuple(dependencies[node_id]),
            dependents=tuple(dependents[node_id]),
        )
        for node_id, node in by_id.items()
    }
    logger.debug("Built execution graph", node_count=len(entries), edge_count=len(edges))
    return ExecutionGraph(entries)
