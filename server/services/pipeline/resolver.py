"""Node input resolution.

A node's input is assembled from its input sources in declaration order:

    fetch -> filters -> mapping -> merge into the running value

Nodes without declared sources read from every dependency (one implicit
``previous_node`` source per incoming edge). Root nodes receive the
execution's initial input.
"""

from typing import Any, Dict, Optional, Protocol

from constants import is_external_source
from core.logging import get_logger
from .cache import OutputCache
from .filters import apply_filters
from .graph import ExecutionGraphNode
from .models import InputSource, SourceType
from .shapes import UNSET, MergeRule, apply_mapping, describe_shape, merge_payloads

logger = get_logger(__name__)


class SourceResolver(Protocol):
    """Fetches data for a non-``previous_node`` input source."""

    async def resolve(self, source: InputSource, context: Dict[str, Any]) -> Any:
        ...


class InputResolver:
    """Builds each node's input from upstream outputs and external sources."""

    def __init__(self, output_cache: OutputCache,
                 source_resolvers: Optional[Dict[str, SourceResolver]] = None):
        self.output_cache = output_cache
        self.source_resolvers: Dict[str, SourceResolver] = dict(source_resolvers or {})

    def register_source(self, source_type: str, resolver: SourceResolver) -> None:
        self.source_resolvers[source_type] = resolver

    async def resolve(self, entry: ExecutionGraphNode, initial_input: Any,
                      context: Dict[str, Any]) -> Any:
        """Resolve the input for one node.

        Args:
            entry: Graph entry for the node (node + dependencies)
            initial_input: Execution-level input handed to root nodes
            context: Execution identifiers (execution_id, workflow_id, ...)

        Returns:
            The merged payload, or [] when no source produced anything
        """
        node = entry.node
        sources = node.input_sources
        if not sources:
            if not entry.dependencies:
                return [] if initial_input is None else initial_input
            sources = [InputSource(node_id=dep) for dep in entry.dependencies]

        resolved = UNSET
        for source in sources:
            value = await self._fetch(source, context)
            if value is None:
                continue

            value = apply_filters(value, source.filters)
            if value is None:
                continue
            value = apply_mapping(value, source.mapping)

            outcome = merge_payloads(resolved, value)
            if outcome.rule == MergeRule.WRAP:
                logger.warning("Merged incompatible payloads into a pair",
                               node_id=node.id,
                               left=describe_shape(resolved),
                               right=describe_shape(value))
            resolved = outcome.value

        return [] if resolved is UNSET else resolved

    async def _fetch(self, source: InputSource, context: Dict[str, Any]) -> Any:
        if source.type == SourceType.PREVIOUS_NODE.value:
            if not source.node_id:
                logger.warning("previous_node source without node_id ignored",
                               node_id=context.get("node_id"))
                return None
            return await self.output_cache.get(context["execution_id"], source.node_id)

        resolver = self.source_resolvers.get(source.type)
        if resolver is None:
            if is_external_source(source.type):
                logger.warning("No resolver registered for input source",
                               source_type=source.type, node_id=context.get("node_id"))
            else:
                logger.warning("Unknown input source type ignored",
                               source_type=source.type, node_id=context.get("node_id"))
            return None

        try:
            return await resolver.resolve(source, context)
        except Exception as e:
            logger.error("Input source resolution failed",
                         source_type=source.type, node_id=context.get("node_id"), error=str(e))
            raise
