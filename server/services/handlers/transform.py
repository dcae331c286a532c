"""Transform node handler - reshape data between nodes.

Modes:
- template: output the ``template`` object (already template-resolved)
- mapping: copy ``mappings`` entries ``{source, target, transform?}``
- expression: evaluate a Python expression
"""

from typing import Any, Dict, List

from constants import TRANSFORM
from core.logging import get_logger
from services.execution.errors import NodeErrorCode
from services.execution.paths import MISSING, get_path, set_path
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, failure_result, success_result,
)
from services.handlers.code import safe_builtins

logger = get_logger(__name__)

MODE_KEYS = ('mode', 'expression', 'mappings', 'template')


def _scope(context: NodeExecutionContext) -> Dict[str, Any]:
    return {
        'inputs': context.inputs,
        'nodes': dict(context.node_outputs),
        'variables': context.variables,
        'trigger': context.trigger,
    }


def evaluate_expression(expression: str, scope: Dict[str, Any]) -> Any:
    return eval(compile(expression, '<transform>', 'eval'),
                {'__builtins__': safe_builtins()}, dict(scope))


def run_expression(context: NodeExecutionContext, expression: Any) -> Dict[str, Any]:
    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("expression is required for expression mode")
    result = evaluate_expression(expression, _scope(context))
    if isinstance(result, dict):
        return result
    return {"value": result}


def run_mappings(context: NodeExecutionContext, mappings: List[Dict[str, Any]]) -> Dict[str, Any]:
    source_data = _scope(context)
    result: Dict[str, Any] = {}
    for mapping in mappings:
        source, target = mapping.get('source'), mapping.get('target')
        if not source or not target:
            continue
        value = get_path(source_data, source, MISSING)
        transform = mapping.get('transform')
        if transform and value is not MISSING:
            try:
                value = evaluate_expression(transform, {**source_data, 'value': value})
            except Exception as e:
                logger.warning("Mapping transform failed", source=source, error=str(e))
        set_path(result, target, None if value is MISSING else value)
    return result


async def handle_transform(context: NodeExecutionContext) -> NodeExecutionResult:
    config = context.resolved_config
    mode = config.get('mode') or 'template'

    try:
        if mode == 'expression':
            result = run_expression(context, config.get('expression'))
        elif mode == 'mapping':
            result = run_mappings(context, [m for m in config.get('mappings') or []
                                            if isinstance(m, dict)])
        elif mode == 'template':
            template = config.get('template')
            if template is None:
                template = {k: v for k, v in config.items() if k not in MODE_KEYS}
            result = template
        else:
            return failure_result(NodeErrorCode.INVALID_CONFIG, f"Invalid transform mode: {mode}")
    except Exception as e:
        await context.log('error', 'Transform failed', {"error": str(e), "mode": mode})
        return failure_result(NodeErrorCode.OPERATION_FAILED, f"Transform failed: {e}")

    await context.log('info', 'Transform completed successfully', {
        "mode": mode,
        "outputKeys": list(result.keys()) if isinstance(result, dict) else [],
    })
    return success_result(result)


TRANSFORM_HANDLERS = [
    (HandlerMetadata(type=TRANSFORM, name='Transform',
                     description='Transform and reshape data', category='data'),
     handle_transform),
]
