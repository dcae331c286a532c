"""Code execution node handler - restricted Python.

Code runs with a reduced builtins table and sees ``input`` (the gathered
inputs), ``variables``, ``trigger`` and ``nodes``. The node output is the
``output`` variable when the code sets it, otherwise the value of a final
bare expression.
"""

import ast
import asyncio
import copy
import io
import json
import math
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from constants import CODE
from core.logging import get_logger
from services.execution.errors import NodeErrorCode
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, failure_result, success_result,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 5000
MAX_TIMEOUT_MS = 30000
DEFAULT_MAX_WORKERS = 4

_limits = {"default_ms": DEFAULT_TIMEOUT_MS, "max_ms": MAX_TIMEOUT_MS}
_pool = {"max_workers": DEFAULT_MAX_WORKERS, "executor": None}

RESULT_NAME = '__result__'


def configure_timeouts(default_ms: int, max_ms: int) -> None:
    _limits["default_ms"] = default_ms
    _limits["max_ms"] = max_ms


def configure_workers(max_workers: int) -> None:
    """Size the code pool. Takes effect when the pool is next created."""
    _pool["max_workers"] = max_workers


def get_code_executor() -> ThreadPoolExecutor:
    """Dedicated pool for user code, kept apart from the loop's default executor."""
    if _pool["executor"] is None:
        _pool["executor"] = ThreadPoolExecutor(max_workers=_pool["max_workers"],
                                               thread_name_prefix="code-node")
    return _pool["executor"]


def shutdown_code_executor() -> None:
    executor, _pool["executor"] = _pool["executor"], None
    if executor is not None:
        executor.shutdown(wait=False, cancel_futures=True)


def safe_builtins(print_fn: Optional[Callable[..., None]] = None) -> Dict[str, Any]:
    """Builtins exposed to user code and transform expressions."""
    builtins = {
        'abs': abs, 'all': all, 'any': any, 'bool': bool,
        'dict': dict, 'enumerate': enumerate, 'filter': filter,
        'float': float, 'int': int, 'isinstance': isinstance, 'len': len, 'list': list,
        'map': map, 'max': max, 'min': min, 'range': range, 'reversed': reversed,
        'round': round, 'set': set, 'sorted': sorted,
        'str': str, 'sum': sum, 'tuple': tuple, 'type': type, 'zip': zip,
        'True': True, 'False': False, 'None': None,
        'Exception': Exception, 'ValueError': ValueError, 'KeyError': KeyError,
        'math': math, 'json': json,
        'datetime': datetime, 'timedelta': timedelta, 'timezone': timezone,
    }
    if print_fn is not None:
        builtins['print'] = print_fn
    return builtins


def compile_code(code: str):
    """Compile code, capturing a trailing bare expression as the result."""
    tree = ast.parse(code, mode='exec')
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        tree.body[-1] = ast.copy_location(
            ast.Assign(targets=[ast.Name(id=RESULT_NAME, ctx=ast.Store())], value=last.value),
            last,
        )
        ast.fix_missing_locations(tree)
    return compile(tree, '<code-node>', 'exec')


def run_code(code: str, scope: Dict[str, Any]) -> Dict[str, Any]:
    """Execute code synchronously. Returns ``{"result": ..., "console": [...]}``."""
    stdout_capture = io.StringIO()

    def captured_print(*args, **kwargs):
        kwargs['file'] = stdout_capture
        print(*args, **kwargs)

    namespace = {
        '__builtins__': safe_builtins(captured_print),
        'output': None,
        **scope,
    }
    exec(compile_code(code), namespace)

    result = namespace.get('output')
    if result is None:
        result = namespace.get(RESULT_NAME)
    console = [line for line in stdout_capture.getvalue().splitlines() if line]
    return {"result": result, "console": console}


def _timeout_ms(config: Dict[str, Any]) -> int:
    try:
        timeout = int(config.get('timeout') or _limits["default_ms"])
    except (TypeError, ValueError):
        timeout = _limits["default_ms"]
    return max(1, min(timeout, _limits["max_ms"]))


async def handle_code(context: NodeExecutionContext) -> NodeExecutionResult:
    """Run the node's Python code in a worker thread with a timeout.

    Dict results are spread into the output, anything else lands under
    ``result``. The code works on copies of the run data; variable writes
    are merged back only when it finishes. A timed out thread is abandoned,
    not killed, and can no longer touch the run.
    """
    start_time = time.time()
    config = context.resolved_config
    code = config.get('code')

    if not isinstance(code, str) or not code.strip():
        await context.log('warn', 'No code provided')
        return success_result({"result": None, "message": "No code to execute"})

    timeout_ms = _timeout_ms(config)
    inputs = copy.deepcopy(context.inputs)
    scope = {
        'input': inputs,
        'inputs': inputs,
        'variables': copy.deepcopy(dict(context.variables)),
        'trigger': copy.deepcopy(context.trigger),
        'nodes': copy.deepcopy(dict(context.node_outputs)),
    }

    loop = asyncio.get_running_loop()
    try:
        executed = await asyncio.wait_for(
            loop.run_in_executor(get_code_executor(), run_code, code, scope),
            timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        await context.log('error', 'Code execution timed out', {"timeoutMs": timeout_ms})
        return failure_result(NodeErrorCode.TIMEOUT,
                              f"Code execution timed out after {timeout_ms}ms", retryable=True)
    except SyntaxError as e:
        return failure_result(NodeErrorCode.INVALID_CONFIG, f"Code syntax error: {e}")
    except Exception as e:
        await context.log('error', 'Code execution failed', {"error": str(e)})
        return failure_result(NodeErrorCode.OPERATION_FAILED,
                              f"Code execution error: {type(e).__name__}: {e}")

    context.variables.update(scope['variables'])

    for line in executed["console"]:
        await context.log('info', line)

    duration_ms = int((time.time() - start_time) * 1000)
    result = executed["result"]
    output = dict(result) if isinstance(result, dict) else {"result": result}
    output["_execution"] = {"durationMs": duration_ms, "timedOut": False}

    return success_result(output, duration_ms=duration_ms)


CODE_HANDLERS = [
    (HandlerMetadata(type=CODE, name='Code',
                     description='Executes custom Python code', category='data'),
     handle_code),
]
