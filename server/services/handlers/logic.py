"""Logic node handlers - Conditional, Switch and Filter."""

import json
import re
from typing import Any, Dict, List, Optional

from constants import CONDITIONAL, DEFAULT_INPUT_HANDLE, FILTER, SWITCH
from core.logging import get_logger
from services.execution.conditions import combine_results, evaluate_condition
from services.execution.errors import NodeErrorCode
from services.execution.paths import MISSING, get_path
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, failure_result, success_result,
)

logger = get_logger(__name__)


def evaluation_data(context: NodeExecutionContext) -> Dict[str, Any]:
    """Data that condition fields are resolved against.

    Later sources win: trigger payload, prior node outputs (by node id), the
    default input's fields, then every input handle, plus ``trigger`` and
    ``variables``.
    """
    data: Dict[str, Any] = {}
    payload = context.trigger.get('payload')
    if isinstance(payload, dict):
        data.update(payload)
    data.update(context.node_outputs)
    default_input = context.inputs.get(DEFAULT_INPUT_HANDLE)
    if isinstance(default_input, dict):
        data.update(default_input)
    data.update(context.inputs)
    data['trigger'] = context.trigger
    data['variables'] = context.variables
    return data


def _conditions(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    conditions = config.get('conditions') or []
    if not isinstance(conditions, list):
        return []
    return [c for c in conditions if isinstance(c, dict)]


# =============================================================================
# CONDITIONAL
# =============================================================================

async def handle_conditional(context: NodeExecutionContext) -> NodeExecutionResult:
    """Evaluate conditions and report the branch taken.

    Output: ``{result, branch, data, evaluatedConditions}``. No conditions
    evaluates to True.
    """
    config = context.resolved_config
    conditions = _conditions(config)
    combine_with = config.get('combineWith') or 'and'

    if not conditions:
        await context.log('warn', 'No conditions configured, defaulting to true')
        return success_result({
            "result": True,
            "branch": "true",
            "data": context.inputs,
            "evaluatedConditions": [],
        })

    data = evaluation_data(context)
    evaluated = [evaluate_condition(condition, data) for condition in conditions]
    result = combine_results([e["result"] for e in evaluated], combine_with)

    await context.log('info', f"Condition evaluation complete: {str(result).lower()}", {
        "combineWith": combine_with,
        "conditionCount": len(conditions),
        "passedCount": sum(1 for e in evaluated if e["result"]),
    })

    return success_result({
        "result": result,
        "branch": "true" if result else "false",
        "data": context.inputs,
        "evaluatedConditions": evaluated,
    })


# =============================================================================
# SWITCH
# =============================================================================

def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return False
    if actual == expected:
        return True
    return _as_text(actual) == _as_text(expected)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def invalid_range_bound(cases: List[Dict[str, Any]]) -> Optional[str]:
    """Describe the first non-numeric ``min``/``max``, or None when all are usable."""
    for index, case in enumerate(cases):
        for key in ('min', 'max'):
            bound = case.get(key)
            if bound is None:
                continue
            try:
                float(bound)
            except (TypeError, ValueError):
                return f"Case {index} has a non-numeric {key}: {bound!r}"
    return None


def match_case(field_value: Any, case: Dict[str, Any], match_mode: str) -> bool:
    """Check one switch case against the field value."""
    expected = case.get('value')

    if match_mode == 'exact':
        return _loose_equals(field_value, expected)

    if match_mode == 'contains':
        if isinstance(field_value, str) and isinstance(expected, str):
            return expected.lower() in field_value.lower()
        if isinstance(field_value, list):
            return expected in field_value
        return False

    if match_mode == 'regex':
        if isinstance(field_value, str) and isinstance(expected, str):
            try:
                return bool(re.search(expected, field_value, re.IGNORECASE))
            except re.error:
                return False
        return False

    if match_mode == 'range':
        if isinstance(field_value, bool):
            return False
        try:
            number = float(field_value)
        except (TypeError, ValueError):
            return False
        low, high = case.get('min'), case.get('max')
        return (low is None or number >= float(low)) and (high is None or number <= float(high))

    return field_value == expected


async def handle_switch(context: NodeExecutionContext) -> NodeExecutionResult:
    """Route to the output of the first matching case, else ``defaultOutput``."""
    config = context.resolved_config
    field = config.get('field')
    cases = [c for c in (config.get('cases') or []) if isinstance(c, dict)]
    default_output = config.get('defaultOutput') or 'default'
    match_mode = config.get('matchMode') or 'exact'

    if match_mode not in ('exact', 'contains', 'regex', 'range'):
        return failure_result(NodeErrorCode.INVALID_CONFIG, f"Unknown match mode: {match_mode}")

    if match_mode == 'range':
        problem = invalid_range_bound(cases)
        if problem:
            await context.log('error', problem)
            return failure_result(NodeErrorCode.INVALID_CONFIG, problem)

    if field:
        field_value = get_path(evaluation_data(context), field, MISSING)
    else:
        field_value = context.inputs

    matched_index = -1
    for index, case in enumerate(cases):
        if match_case(field_value, case, match_mode):
            matched_index = index
            break

    is_default = matched_index < 0
    matched = None if is_default else cases[matched_index]
    output = (matched.get('output') if matched else None) or default_output
    reported_value = None if field_value is MISSING else field_value

    await context.log('info', f"Switch routed to: {output}", {
        "matchedIndex": matched_index,
        "isDefault": is_default,
        "fieldValue": json.dumps(reported_value, default=str)
        if isinstance(reported_value, (dict, list)) else reported_value,
    })

    return success_result({
        "output": output,
        "matchedCase": 'default' if is_default else matched.get('value'),
        "matchedIndex": matched_index,
        "isDefault": is_default,
        "fieldValue": reported_value,
        "data": context.inputs,
        "evaluatedCases": [
            {"value": c.get('value'), "output": c.get('output'), "matched": i == matched_index}
            for i, c in enumerate(cases)
        ],
    })


# =============================================================================
# FILTER
# =============================================================================

async def handle_filter(context: NodeExecutionContext) -> NodeExecutionResult:
    """Keep the array items that satisfy the conditions.

    Each item is the data its conditions are resolved against.
    """
    config = context.resolved_config
    input_field = config.get('inputField') or 'items'
    output_field = config.get('outputField') or 'filtered'
    conditions = _conditions(config)
    combine_with = config.get('combineWith') or 'and'

    items = get_path(evaluation_data(context), input_field, MISSING)
    if items is MISSING and input_field == 'items':
        default_input = context.inputs.get(DEFAULT_INPUT_HANDLE)
        if isinstance(default_input, list):
            items = default_input

    if not isinstance(items, list):
        actual = 'undefined' if items is MISSING else type(items).__name__
        await context.log('error', 'Input is not an array',
                          {"inputField": input_field, "actualType": actual})
        return failure_result(NodeErrorCode.INVALID_CONFIG,
                              f"Expected array at '{input_field}', got {actual}")

    passed: List[Any] = []
    removed: List[Any] = []
    for item in items:
        results = [evaluate_condition(condition, item)["result"] for condition in conditions]
        (passed if combine_results(results, combine_with) else removed).append(item)

    total = len(items)
    await context.log('info', 'Filter complete',
                      {"total": total, "passed": len(passed), "removed": len(removed)})

    return success_result({
        output_field: passed,
        "filtered": passed,
        "removed": removed,
        "counts": {
            "total": total,
            "passed": len(passed),
            "removed": len(removed),
            "passRate": round(len(passed) / total * 100) if total else 0,
        },
        "first": passed[0] if passed else None,
        "last": passed[-1] if passed else None,
        "isEmpty": not passed,
    })


LOGIC_HANDLERS = [
    (HandlerMetadata(type=CONDITIONAL, name='If/Then',
                     description='Routes data based on conditions', category='logic'),
     handle_conditional),
    (HandlerMetadata(type=SWITCH, name='Switch',
                     description='Routes data to one of several outputs by value', category='logic'),
     handle_switch),
    (HandlerMetadata(type=FILTER, name='Filter',
                     description='Filters arrays based on conditions', category='logic'),
     handle_filter),
]
