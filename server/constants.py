"""Centralized constants for node types, trigger types and execution enums.

Single source of truth for node type identifiers used by the handler
registry, the executor and the API layer.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER = 'manual-trigger'
FORM_TRIGGER = 'form-trigger'
WEBHOOK_TRIGGER = 'webhook-trigger'
SCHEDULE_TRIGGER = 'schedule-trigger'

TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER,
    FORM_TRIGGER,
    WEBHOOK_TRIGGER,
    SCHEDULE_TRIGGER,
])

# =============================================================================
# LOGIC NODE TYPES
# =============================================================================

CONDITIONAL = 'conditional'
SWITCH = 'switch'
FILTER = 'filter'

LOGIC_NODE_TYPES: FrozenSet[str] = frozenset([CONDITIONAL, SWITCH, FILTER])

# =============================================================================
# DATA NODE TYPES
# =============================================================================

TRANSFORM = 'transform'
CODE = 'code'

DATA_NODE_TYPES: FrozenSet[str] = frozenset([TRANSFORM, CODE])

# =============================================================================
# INTEGRATION NODE TYPES
# =============================================================================

HTTP_REQUEST = 'http-request'
DATABASE_QUERY = 'database-query'
DATABASE_WRITE = 'database-write'
EMAIL_SEND = 'email-send'

INTEGRATION_NODE_TYPES: FrozenSet[str] = frozenset([
    HTTP_REQUEST,
    DATABASE_QUERY,
    DATABASE_WRITE,
    EMAIL_SEND,
])

# =============================================================================
# TRIGGER SOURCES (WorkflowTrigger.type)
# =============================================================================

TRIGGER_SOURCE_TYPES: FrozenSet[str] = frozenset([
    'manual',
    'webhook',
    'schedule',
    'form_submission',
    'api',
])

# =============================================================================
# EXECUTION
# =============================================================================

ERROR_HANDLING_STOP = 'stop'
ERROR_HANDLING_CONTINUE = 'continue'

DEFAULT_INPUT_HANDLE = 'default'

# Execution log event kinds
LOG_EVENT_NODE_START = 'node_start'
LOG_EVENT_NODE_COMPLETE = 'node_complete'
LOG_EVENT_NODE_ERROR = 'node_error'
LOG_EVENT_CUSTOM = 'custom'

LOG_LEVELS: FrozenSet[str] = frozenset(['debug', 'info', 'warn', 'error'])

# Node id recorded on executor-level failures
EXECUTOR_NODE_ID = 'executor'


def is_trigger_node(node_type: str) -> bool:
    """Check if a node type is a trigger node (workflow starting point)."""
    return node_type in TRIGGER_NODE_TYPES
