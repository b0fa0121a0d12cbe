"""Payload shape inspection and normalization.

Nodes emit untyped payloads: plain arrays, single objects, wrapped containers
such as ``{items, total}`` or ``{data, meta}``, scalars or nothing. Every
shape decision the engine makes (merging upstream outputs, counting items,
unwrapping durable cache reads, detecting formatted output) lives here as a
pure function so each case can be tested on its own.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

# Conventional container keys searched, in order, for an embedded array
ARRAY_KEYS = ("data", "items", "results", "segments")

# Keys of the summary envelope built by ``summarize_output``
ENVELOPE_KEYS = ("count", "sample", "items")

SAMPLE_SIZE = 5


class PayloadKind(str, Enum):
    ARRAY = "array"
    OBJECT = "object"
    SCALAR = "scalar"
    NULL = "null"


def classify(value: Any) -> PayloadKind:
    if value is None:
        return PayloadKind.NULL
    if isinstance(value, (list, tuple)):
        return PayloadKind.ARRAY
    if isinstance(value, dict):
        return PayloadKind.OBJECT
    return PayloadKind.SCALAR


def extract_array(value: Any) -> Optional[List[Any]]:
    """Interpret a payload as an array.

    Returns the value itself for arrays, the first array found under one of
    ARRAY_KEYS for objects, and None otherwise.
    """
    kind = classify(value)
    if kind == PayloadKind.ARRAY:
        return list(value)
    if kind == PayloadKind.OBJECT:
        for key in ARRAY_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, (list, tuple)):
                return list(candidate)
    return None


# =============================================================================
# MERGING
# =============================================================================

class MergeRule(str, Enum):
    ADOPT = "adopt"          # running value was unset
    CONCAT = "concat"        # array-like on at least one side
    OBJECT = "object"        # shallow merge, new keys win
    WRAP = "wrap"            # last resort, two-element array


@dataclass
class MergeOutcome:
    value: Any
    rule: MergeRule


# Sentinel for "no running value yet"
UNSET = object()


def merge_payloads(current: Any, incoming: Any) -> MergeOutcome:
    """Fold ``incoming`` into the running value ``current``.

    Pass ``UNSET`` as ``current`` for the first source.
    """
    if current is UNSET:
        return MergeOutcome(incoming, MergeRule.ADOPT)

    left = extract_array(current)
    right = extract_array(incoming)
    if (left is not None and right is not None) or left or right:
        return MergeOutcome((left or []) + (right or []), MergeRule.CONCAT)

    if classify(current) == PayloadKind.OBJECT and classify(incoming) == PayloadKind.OBJECT:
        return MergeOutcome({**current, **incoming}, MergeRule.OBJECT)

    return MergeOutcome([current, incoming], MergeRule.WRAP)


# =============================================================================
# COUNTING AND SIZING
# =============================================================================

def item_count(value: Any) -> int:
    """Array length, 0 for everything else."""
    return len(value) if classify(value) == PayloadKind.ARRAY else 0


def byte_size(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return 0


def output_data_count(value: Any) -> int:
    """Best-effort number of items a stored output represents.

    Explicit count/total/_count keys win, then array length, then the length
    of the first array-valued property.
    """
    kind = classify(value)
    if kind == PayloadKind.ARRAY:
        return len(value)
    if kind != PayloadKind.OBJECT:
        return 0
    for key in ("count", "total", "_count"):
        counted = value.get(key)
        if isinstance(counted, int) and not isinstance(counted, bool):
            return counted
    for candidate in value.values():
        if isinstance(candidate, list):
            return len(candidate)
    return 0


def infer_schema(items: Any) -> Dict[str, str]:
    """Type names of the first item's fields."""
    if classify(items) != PayloadKind.ARRAY or not items:
        return {}
    sample = items[0]
    if not isinstance(sample, dict):
        return {}
    return {key: _type_name(value) for key, value in sample.items()}


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "null" if value is None else type(value).__name__


# =============================================================================
# STORED OUTPUT SHAPES
# =============================================================================

def summarize_output(items: Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Generic display envelope for a node that has no formatter of its own."""
    items = items if classify(items) == PayloadKind.ARRAY else ([] if items is None else [items])
    return {
        "count": len(items),
        "sample": list(items[:SAMPLE_SIZE]),
        "schema": infer_schema(items),
        "items": list(items),
        "meta": meta or {"total": len(items), "processed": len(items)},
    }


def is_summary_envelope(value: Any) -> bool:
    return isinstance(value, dict) and all(k in value for k in ENVELOPE_KEYS)


def is_fully_formatted(value: Any) -> bool:
    """True when a stored output was shaped by the node's own formatter.

    Anything present that is not the generic summary envelope counts.
    """
    return value is not None and not is_summary_envelope(value)


def describe_shape(value: Any) -> str:
    kind = classify(value)
    if kind == PayloadKind.OBJECT:
        keys = sorted(value.keys())[:5]
        return f"object[{','.join(str(k) for k in keys)}]"
    if kind == PayloadKind.ARRAY:
        return f"array[{len(value)}]"
    return kind.value


def unwrap_stored_output(value: Any) -> Any:
    """Normalize an output read back from the durable tier.

    Cases:
        None                      -> []
        [...]                     -> as is
        {"items": [...], ...}     -> the items
        {"data": [...], ...}      -> the data
        {"0": {...}, "meta": ...} -> the inner object
        anything else             -> as is
    """
    kind = classify(value)
    if kind == PayloadKind.NULL:
        return []
    if kind == PayloadKind.ARRAY:
        return list(value)
    if kind == PayloadKind.OBJECT:
        for key in ("items", "data"):
            if isinstance(value.get(key), list):
                return value[key]
        keys = list(value.keys())
        if keys and keys[0] == "0" and isinstance(value["0"], dict):
            return value["0"]
    return value


def unwrap_input(value: Any) -> List[Any]:
    """Flatten a node input into the list of items a step processes.

    Handles plain arrays, a single wrapper object inside an array
    (``[{"data": [...]}]``) and objects carrying an array property.
    """
    kind = classify(value)
    if kind == PayloadKind.ARRAY:
        if len(value) == 1 and isinstance(value[0], dict):
            inner = _first_object_array(value[0])
            if inner is not None:
                return inner
        return list(value)
    if kind == PayloadKind.OBJECT:
        inner = _first_object_array(value, objects_only=False)
        return inner if inner is not None else []
    return []


def _first_object_array(wrapper: Dict[str, Any], objects_only: bool = True) -> Optional[List[Any]]:
    for candidate in wrapper.values():
        if not isinstance(candidate, list) or not candidate:
            continue
        if objects_only and not isinstance(candidate[0], dict):
            continue
        nested = candidate[0].get("data") if isinstance(candidate[0], dict) else None
        if isinstance(nested, list) and nested:
            return list(nested)
        return list(candidate)
    return None


# =============================================================================
# PROJECTION
# =============================================================================

def apply_mapping(value: Any, mapping: Optional[Dict[str, str]]) -> Any:
    """Project items to ``{target_key: item[source_key]}``."""
    if not mapping:
        return value

    def project(item: Any) -> Dict[str, Any]:
        if not isinstance(item, dict):
            return {target: None for target in mapping}
        return {target: item.get(source) for target, source in mapping.items()}

    kind = classify(value)
    if kind == PayloadKind.ARRAY:
        return [project(item) for item in value]
    if kind == PayloadKind.OBJECT:
        array = extract_array(value)
        if array is not None:
            return [project(item) for item in array]
        return project(value)
    return value
