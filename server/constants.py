"""Centralized constants for node and input source types.

Single source of truth for type names the engine treats specially.
"""

from typing import FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

# Nodes that load data with no upstream input; run before the main schedule
DATASOURCE_NODE_TYPES: FrozenSet[str] = frozenset([
    'datasource',
])

# =============================================================================
# INPUT SOURCE TYPES
# =============================================================================

PREVIOUS_NODE_SOURCE = 'previous_node'

# Resolved by injected collaborators, never by the engine itself
EXTERNAL_SOURCE_TYPES: FrozenSet[str] = frozenset([
    'dataset',
    'document',
    'segment',
    'file',
    'api',
])


def is_datasource_type(node_type: str, configured: FrozenSet[str] = DATASOURCE_NODE_TYPES) -> bool:
    """Check if a node type runs in the datasource phase."""
    return node_type in configured


def is_external_source(source_type: str) -> bool:
    """Check if an input source type is one of the recognized external kinds."""
    return source_type in EXTERNAL_SOURCE_TYPES
