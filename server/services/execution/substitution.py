"""Variable substitution - template resolution for node configuration.

Resolves ``{{path.to.value}}`` templates against a substitution context::

    {
        "nodes": {node_id: output, ...},       # outputs of completed nodes
        "trigger": {"type": ..., "payload": {...}, **payload},
        "variables": {...},
    }

Supported forms:
- ``{{nodes.formTrigger.data}}`` as the whole value keeps the resolved type
- ``Hello {{nodes.formTrigger.data.name}}`` interpolates text
- ``{{trigger.payload.email}}`` / ``{{trigger.email}}``
- ``{{variables.count}}``
"""

import json
import re
from typing import Any, Dict, Mapping, Optional

from core.logging import get_logger
from services.execution.paths import MISSING, get_path

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')


def build_substitution_context(
    node_outputs: Mapping[str, Any],
    trigger: Optional[Mapping[str, Any]],
    variables: Mapping[str, Any],
) -> Dict[str, Any]:
    """Build the substitution context from current run state.

    ``node_outputs`` is copied so that a context only ever sees nodes that
    completed before it was built.
    """
    trigger = trigger or {}
    payload = trigger.get("payload") or {}
    return {
        "nodes": dict(node_outputs),
        "trigger": {**payload, "type": trigger.get("type"), "payload": payload},
        "variables": variables,
    }


def has_template(value: str) -> bool:
    return bool(TEMPLATE_PATTERN.search(value))


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve a dot path against the context; ``MISSING`` when absent."""
    return get_path(context, path.strip(), MISSING)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def substitute_string(value: str, context: Mapping[str, Any]) -> Any:
    """Substitute templates in a single string.

    A string that is exactly one template returns the raw resolved value, or
    the string unchanged when the path does not resolve. Embedded templates
    are interpolated; unresolved ones (and ``None``) are left verbatim.
    """
    full = TEMPLATE_PATTERN.fullmatch(value)
    if full:
        resolved = resolve_path(full.group(1), context)
        if resolved is MISSING:
            logger.debug("Unresolved template", template=value)
            return value
        return resolved

    def replace(match: re.Match) -> str:
        resolved = resolve_path(match.group(1), context)
        if resolved is MISSING or resolved is None:
            logger.debug("Unresolved template", template=match.group(0))
            return match.group(0)
        return _stringify(resolved)

    return TEMPLATE_PATTERN.sub(replace, value)


def substitute(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively substitute templates through strings, lists and dicts.

    Every other type passes through unchanged.
    """
    if isinstance(value, str):
        if has_template(value):
            return substitute_string(value, context)
        return value
    if isinstance(value, list):
        return [substitute(item, context) for item in value]
    if isinstance(value, dict):
        return {k: substitute(v, context) for k, v in value.items()}
    return value
