"""Input-source filters.

A source's ``filters`` take one of two forms:

- Mapping form: ``{"status": "active", "lang": "en"}``. Every key/value pair
  must match (equality on the item field).
- Condition form: ``[{"field": "meta.score", "operator": "gte", "value": 0.5}]``.
  Every condition must hold. Fields use dot notation, digits index lists.

Supported operators: eq, neq, gt, lt, gte, lte, contains, not_contains,
exists, not_exists, is_empty, is_not_empty, matches, in, not_in,
starts_with, ends_with.
"""

import re
from typing import Any, Callable, Dict, Optional

from core.logging import get_logger
from .shapes import PayloadKind, classify, extract_array

logger = get_logger(__name__)


def get_nested_value(data: Any, field_path: str) -> Any:
    """Resolve a dot path such as ``result.status`` or ``items.0.name``.

    Returns None when any segment is missing.
    """
    if data is None or not field_path:
        return None

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def _compare(actual: Any, target: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    if actual is None or target is None:
        return False
    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass
    try:
        return comparator(str(actual), str(target))
    except (ValueError, TypeError):
        return False


def _contains(actual: Any, target: Any) -> bool:
    if isinstance(actual, str):
        return str(target) in actual
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    return False


def _is_empty(actual: Any, _target: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, dict, tuple)):
        return len(actual) == 0
    return False


def _matches(actual: Any, target: Any) -> bool:
    if actual is None or target is None:
        return False
    try:
        return bool(re.search(str(target), str(actual)))
    except re.error:
        logger.warning("Invalid regex pattern in filter", pattern=target)
        return False


def _in(actual: Any, target: Any) -> bool:
    if isinstance(target, (list, tuple, set)):
        return actual in target
    return actual == target


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, t: a == t,
    "neq": lambda a, t: a != t,
    "gt": lambda a, t: _compare(a, t, lambda x, y: x > y),
    "lt": lambda a, t: _compare(a, t, lambda x, y: x < y),
    "gte": lambda a, t: _compare(a, t, lambda x, y: x >= y),
    "lte": lambda a, t: _compare(a, t, lambda x, y: x <= y),
    "contains": _contains,
    "not_contains": lambda a, t: not _contains(a, t),
    "exists": lambda a, _t: a is not None,
    "not_exists": lambda a, _t: a is None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, t: not _is_empty(a, t),
    "matches": _matches,
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
    "starts_with": lambda a, t: a is not None and t is not None and str(a).startswith(str(t)),
    "ends_with": lambda a, t: a is not None and t is not None and str(a).endswith(str(t)),
}


def evaluate_condition(condition: Dict[str, Any], item: Any) -> bool:
    """Evaluate one ``{field, operator, value}`` condition against an item."""
    operator = condition.get("operator", "eq")
    evaluate = OPERATORS.get(operator)
    if evaluate is None:
        logger.warning("Unknown filter operator", operator=operator)
        return False
    actual = get_nested_value(item, condition.get("field", ""))
    return evaluate(actual, condition.get("value"))


def item_matches(item: Any, filters: Any) -> bool:
    """True when the item satisfies every filter."""
    if not filters:
        return True
    if isinstance(filters, dict):
        return isinstance(item, dict) and all(
            item.get(key) == expected for key, expected in filters.items()
        )
    if isinstance(filters, list):
        return all(evaluate_condition(c, item) for c in filters if isinstance(c, dict))
    logger.warning("Unsupported filter definition", filters_type=type(filters).__name__)
    return False


def apply_filters(value: Any, filters: Any) -> Optional[Any]:
    """Keep only the items of a payload that match ``filters``.

    Arrays (and objects carrying an array under a conventional key) are
    filtered item by item. A single object is kept whole or dropped, in which
    case None is returned.
    """
    if not filters:
        return value

    kind = classify(value)
    if kind == PayloadKind.ARRAY:
        return [item for item in value if item_matches(item, filters)]
    if kind == PayloadKind.OBJECT:
        array = extract_array(value)
        if array is not None:
            return [item for item in array if item_matches(item, filters)]
        return value if item_matches(value, filters) else None
    return value
