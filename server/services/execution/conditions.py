"""Condition evaluation for conditional, switch and filter nodes.

Supported operators:
- equals: Equal, also matching on string form ("21" equals 21)
- not_equals: Not equal
- contains: String (case-insensitive) or list contains value
- not_contains: String/list does not contain value
- starts_with: String starts with value (case-insensitive)
- ends_with: String ends with value (case-insensitive)
- regex: Case-insensitive regex search
- gt / gte / lt / lte: Numeric comparison
- is_empty: Field is empty (None, "", [], {})
- is_not_empty: Field is not empty
- is_true: true, "true", 1 or "1"
- is_false: false, "false", 0 or "0"
- exists: Field path resolves (None counts as present)
- not_exists: Field path does not resolve
"""

import re
from typing import Any, Callable, Dict, List, Optional

from core.logging import get_logger
from services.execution.paths import MISSING, get_path

logger = get_logger(__name__)


# Type alias for condition dict
ConditionDict = Dict[str, Any]


def _as_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> Optional[float]:
    if value is MISSING or value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_compare(actual: Any, target: Any, comparator: Callable[[float, float], bool]) -> bool:
    """Numeric comparison, False when either side is not a number."""
    left, right = _to_number(actual), _to_number(target)
    if left is None or right is None:
        return False
    return comparator(left, right)


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator against a resolved value."""
    if operator == "equals":
        if actual is MISSING:
            return False
        return actual == target or _as_string(actual) == _as_string(target)

    elif operator == "not_equals":
        return not _evaluate_operator("equals", actual, target)

    elif operator == "contains":
        if isinstance(actual, str) and isinstance(target, str):
            return target.lower() in actual.lower()
        if isinstance(actual, (list, tuple)):
            return target in actual
        return False

    elif operator == "not_contains":
        if isinstance(actual, str) and isinstance(target, str):
            return target.lower() not in actual.lower()
        if isinstance(actual, (list, tuple)):
            return target not in actual
        return True

    elif operator == "starts_with":
        if isinstance(actual, str) and isinstance(target, str):
            return actual.lower().startswith(target.lower())
        return False

    elif operator == "ends_with":
        if isinstance(actual, str) and isinstance(target, str):
            return actual.lower().endswith(target.lower())
        return False

    elif operator == "regex":
        if isinstance(actual, str) and isinstance(target, str):
            try:
                return bool(re.search(target, actual, re.IGNORECASE))
            except re.error:
                logger.warning("Invalid regex pattern", pattern=target)
                return False
        return False

    elif operator == "gt":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "gte":
        return _safe_compare(actual, target, lambda a, b: a >= b)

    elif operator == "lt":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "lte":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    elif operator == "is_empty":
        return _is_empty(actual)

    elif operator == "is_not_empty":
        return not _is_empty(actual)

    elif operator == "is_true":
        return actual is True or actual in ("true", "1") or (
            not isinstance(actual, bool) and isinstance(actual, (int, float)) and actual == 1)

    elif operator == "is_false":
        return actual is False or actual in ("false", "0") or (
            not isinstance(actual, bool) and isinstance(actual, (int, float)) and actual == 0)

    elif operator == "exists":
        return actual is not MISSING

    elif operator == "not_exists":
        return actual is MISSING

    else:
        logger.warning("Unknown operator", operator=operator)
        return False


def evaluate_condition(condition: ConditionDict, data: Any) -> Dict[str, Any]:
    """Evaluate one ``{field, operator, value}`` condition against data.

    Returns the evaluation record ``{field, operator, value, fieldValue,
    result}``; ``fieldValue`` is None for paths that do not resolve.
    """
    field = condition.get("field", "")
    operator = condition.get("operator", "equals")
    target_value = condition.get("value")

    actual_value = get_path(data, field, MISSING) if field else MISSING
    result = _evaluate_operator(operator, actual_value, target_value)

    logger.debug("Evaluated condition", field=field, operator=operator,
                 target=target_value, result=result)

    return {
        "field": field,
        "operator": operator,
        "value": target_value,
        "fieldValue": None if actual_value is MISSING else actual_value,
        "result": result,
    }


def combine_results(results: List[bool], logic: str = "and") -> bool:
    """Combine condition results with AND/OR logic. No results is True."""
    if not results:
        return True
    if logic == "or":
        return any(results)
    return all(results)


def evaluate_conditions(conditions: List[ConditionDict], data: Any,
                        logic: str = "and") -> bool:
    return combine_results([evaluate_condition(c, data)["result"] for c in conditions], logic)


# Operator metadata for the handlers listing
OPERATORS = {
    "equals": {"label": "Equals", "requires_value": True},
    "not_equals": {"label": "Not Equals", "requires_value": True},
    "contains": {"label": "Contains", "requires_value": True},
    "not_contains": {"label": "Does Not Contain", "requires_value": True},
    "starts_with": {"label": "Starts With", "requires_value": True},
    "ends_with": {"label": "Ends With", "requires_value": True},
    "regex": {"label": "Matches Regex", "requires_value": True},
    "gt": {"label": "Greater Than", "requires_value": True},
    "gte": {"label": "Greater or Equal", "requires_value": True},
    "lt": {"label": "Less Than", "requires_value": True},
    "lte": {"label": "Less or Equal", "requires_value": True},
    "is_empty": {"label": "Is Empty", "requires_value": False},
    "is_not_empty": {"label": "Is Not Empty", "requires_value": False},
    "is_true": {"label": "Is True", "requires_value": False},
    "is_false": {"label": "Is False", "requires_value": False},
    "exists": {"label": "Exists", "requires_value": False},
    "not_exists": {"label": "Does Not Exist", "requires_value": False},
}


def get_available_operators() -> Dict[str, Dict[str, Any]]:
    return OPERATORS.copy()
