"""Node handlers package.

Handlers are organized by category:
- triggers.py: Manual, Form, Webhook and Schedule triggers
- logic.py: Conditional, Switch, Filter
- transform.py: Transform (template, mapping, expression)
- code.py: Code (restricted Python)
- http.py: HTTP Request
- database.py: Database Query, Database Write
- mail.py: Send Email

Every handler is ``async def handle_x(context) -> NodeExecutionResult`` and
is registered once at startup through ``register_builtin_handlers``.
"""

from typing import List, Optional, Tuple

from core.logging import get_logger
from services.execution.registry import HandlerRegistry
from services.execution.types import Handler, HandlerMetadata

# Trigger handlers
from .triggers import (
    TRIGGER_HANDLERS,
    handle_manual_trigger,
    handle_form_trigger,
    handle_webhook_trigger,
    handle_schedule_trigger,
)

# Logic handlers
from .logic import (
    LOGIC_HANDLERS,
    handle_conditional,
    handle_switch,
    handle_filter,
)

# Data handlers
from .transform import TRANSFORM_HANDLERS, handle_transform
from .code import CODE_HANDLERS, handle_code, configure_timeouts, configure_workers, shutdown_code_executor

# Integration handlers
from .http import HTTP_HANDLERS, handle_http_request, configure_default_timeout
from .database import (
    DATABASE_HANDLERS,
    handle_database_query,
    handle_database_write,
    configure_query_timeout,
)
from .mail import EMAIL_HANDLERS, handle_email_send, configure_smtp

logger = get_logger(__name__)

BUILTIN_HANDLERS: List[Tuple[HandlerMetadata, Handler]] = [
    *TRIGGER_HANDLERS,
    *LOGIC_HANDLERS,
    *TRANSFORM_HANDLERS,
    *CODE_HANDLERS,
    *HTTP_HANDLERS,
    *DATABASE_HANDLERS,
    *EMAIL_HANDLERS,
]


def configure_handlers(settings) -> None:
    """Apply timeouts and SMTP settings to the handlers that read them."""
    configure_timeouts(settings.code_default_timeout_ms, settings.code_max_timeout_ms)
    configure_workers(settings.code_max_workers)
    configure_default_timeout(settings.http_default_timeout_ms)
    configure_query_timeout(settings.database_query_timeout)
    configure_smtp(settings.smtp_host, settings.smtp_port, settings.smtp_user,
                   settings.smtp_password, settings.from_email)


def register_builtin_handlers(registry: Optional[HandlerRegistry] = None,
                              settings=None) -> HandlerRegistry:
    """Register every built-in handler, returning the registry."""
    registry = registry if registry is not None else HandlerRegistry()
    if settings is not None:
        configure_handlers(settings)
    for metadata, handler in BUILTIN_HANDLERS:
        registry.register(metadata, handler)
    logger.info("Registered built-in handlers", count=len(BUILTIN_HANDLERS))
    return registry


__all__ = [
    "BUILTIN_HANDLERS",
    "configure_handlers",
    "register_builtin_handlers",
    # Triggers
    "handle_manual_trigger",
    "handle_form_trigger",
    "handle_webhook_trigger",
    "handle_schedule_trigger",
    # Logic
    "handle_conditional",
    "handle_switch",
    "handle_filter",
    # Data
    "handle_transform",
    "handle_code",
    "shutdown_code_executor",
    # Integrations
    "handle_http_request",
    "handle_database_query",
    "handle_database_write",
    "handle_email_send",
]
