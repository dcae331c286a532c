"""Trigger node handlers - manual, form, webhook and schedule entry points.

Triggers do not wait for events. The job carries the event that started the
run and the trigger node turns it into the first node output.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from constants import FORM_TRIGGER, MANUAL_TRIGGER, SCHEDULE_TRIGGER, WEBHOOK_TRIGGER
from core.logging import get_logger
from models.workflow import new_id
from services.execution.errors import NodeErrorCode
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, ResultMetadata,
    failure_result, success_result,
)

logger = get_logger(__name__)

SIGNATURE_HEADERS = ('x-webhook-signature', 'x-hub-signature-256', 'x-signature')


async def _check_trigger_type(context: NodeExecutionContext, expected: str) -> None:
    received = context.trigger.get('type')
    if received != expected:
        await context.log('warn', f"Unexpected trigger type: {received}",
                          {"expected": expected, "received": received})


# =============================================================================
# MANUAL / FORM
# =============================================================================

async def handle_manual_trigger(context: NodeExecutionContext) -> NodeExecutionResult:
    """Output the trigger payload unchanged."""
    payload = context.trigger.get('payload') or {}
    return success_result(dict(payload))


async def handle_form_trigger(context: NodeExecutionContext) -> NodeExecutionResult:
    await _check_trigger_type(context, 'form_submission')
    payload = context.trigger.get('payload') or {}
    config = context.resolved_config

    data = payload.get('data')
    if data is None:
        # Payload is the submission itself
        data = {k: v for k, v in payload.items()
                if k not in ('formId', 'submissionId', 'metadata', 'submittedAt')}

    return success_result({
        "formId": payload.get('formId') or config.get('formId'),
        "submissionId": payload.get('submissionId') or new_id(),
        "data": data,
        "metadata": payload.get('metadata') or {},
        "submittedAt": payload.get('submittedAt') or datetime.now(timezone.utc).isoformat(),
    })


# =============================================================================
# WEBHOOK
# =============================================================================

def verify_signature(raw_body: str, signature: str, secret: str) -> bool:
    """Verify an HMAC hex signature, optionally prefixed ``sha256=`` or ``sha1=``."""
    algorithm = hashlib.sha256
    provided = signature
    if signature.startswith('sha256='):
        provided = signature[len('sha256='):]
    elif signature.startswith('sha1='):
        algorithm = hashlib.sha1
        provided = signature[len('sha1='):]

    expected = hmac.new(secret.encode('utf-8'), raw_body.encode('utf-8'), algorithm).hexdigest()
    return hmac.compare_digest(provided.strip().lower().encode('utf-8'), expected.encode('utf-8'))


async def handle_webhook_trigger(context: NodeExecutionContext) -> NodeExecutionResult:
    """Expose the received request and verify its signature when a secret is set.

    A failed verification is reported in the output (``verified=False``)
    rather than failing the node, so downstream nodes can branch on it.
    """
    await _check_trigger_type(context, 'webhook')
    payload = context.trigger.get('payload') or {}
    config = context.resolved_config

    headers = {str(k).lower(): v for k, v in (payload.get('headers') or {}).items()}
    body = payload.get('body') if payload.get('body') is not None else {}
    query = payload.get('query') or {}
    raw_body: Optional[str] = payload.get('rawBody')

    secret = config.get('secret')
    verified = True
    signature_error = None
    if secret and raw_body is not None:
        signature = next((headers[h] for h in SIGNATURE_HEADERS if headers.get(h)), None)
        if signature is None:
            verified = False
            signature_error = 'Missing webhook signature'
            await context.log('warn', 'Webhook signature expected but not provided')
        elif not verify_signature(raw_body, signature, secret):
            verified = False
            signature_error = 'Invalid webhook signature'
            await context.log('warn', 'Webhook signature verification failed')

    output = {
        "method": payload.get('method') or 'POST',
        "headers": headers,
        "query": query,
        "body": body,
        "path": payload.get('path') or config.get('webhookPath') or '',
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "verified": verified,
        "signatureError": signature_error,
        "source": {
            "ip": payload.get('sourceIp'),
            "userAgent": payload.get('userAgent') or headers.get('user-agent'),
        },
    }
    bytes_processed = len(raw_body) if raw_body is not None else len(str(body))
    return NodeExecutionResult(success=True, data=output,
                               metadata=ResultMetadata(bytes_processed=bytes_processed))


# =============================================================================
# SCHEDULE
# =============================================================================

def describe_cron(expression: str) -> str:
    """Human-readable description for common cron shapes."""
    parts = expression.split()
    if len(parts) != 5:
        return expression
    minute, hour, day, month, weekday = parts

    if (minute, hour, day, month, weekday) == ('*', '*', '*', '*', '*'):
        return 'Every minute'
    if minute == '0' and (hour, day, month, weekday) == ('*', '*', '*', '*'):
        return 'Every hour'
    if minute.isdigit() and hour.isdigit() and (day, month) == ('*', '*'):
        at = f"{int(hour)}:{int(minute):02d}"
        if weekday == '*':
            return f"Every day at {at}"
        if weekday == '1-5':
            return f"Weekdays at {at}"
        names = {'0': 'Sunday', '7': 'Sunday', '1': 'Monday', '2': 'Tuesday',
                 '3': 'Wednesday', '4': 'Thursday', '5': 'Friday', '6': 'Saturday'}
        if weekday in names:
            return f"Every {names[weekday]} at {at}"
    return expression


def next_fire_time(expression: str, tz: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time of a 5-field crontab expression. Raises ValueError when invalid."""
    trigger = CronTrigger.from_crontab(expression, timezone=tz)
    now = now or datetime.now(ZoneInfo(tz))
    return trigger.get_next_fire_time(None, now)


async def handle_schedule_trigger(context: NodeExecutionContext) -> NodeExecutionResult:
    await _check_trigger_type(context, 'schedule')
    payload = context.trigger.get('payload') or {}
    config = context.resolved_config

    expression = config.get('schedule') or payload.get('schedule') or '* * * * *'
    tz = config.get('timezone') or payload.get('timezone') or 'UTC'

    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return failure_result(NodeErrorCode.INVALID_CONFIG, f"Unknown timezone: {tz}")

    now = datetime.now(zone)
    try:
        next_run = next_fire_time(expression, tz, now)
    except ValueError as e:
        return failure_result(NodeErrorCode.INVALID_CONFIG,
                              f"Invalid cron expression '{expression}': {e}")

    description = describe_cron(expression)
    iteration = payload.get('iteration') or 1
    static_payload: Dict[str, Any] = config.get('payload') or {}

    await context.log('info', f"Schedule: {description}",
                      {"cronExpression": expression, "timezone": tz, "iteration": iteration})

    return success_result({
        "schedule": {
            "cronExpression": expression,
            "timezone": tz,
            "description": description,
        },
        "scheduledAt": payload.get('scheduledAt') or now.isoformat(),
        "executedAt": now.isoformat(),
        "nextScheduledAt": next_run.isoformat() if next_run else None,
        "execution": {
            "iteration": iteration,
            "isFirstRun": iteration == 1,
        },
        "payload": {**static_payload, **payload},
        "dayOfWeek": now.strftime('%A'),
        "hour": now.strftime('%H'),
        "date": now.date().isoformat(),
    })


TRIGGER_HANDLERS = [
    (HandlerMetadata(type=MANUAL_TRIGGER, name='Manual Trigger',
                     description='Starts a workflow on demand', category='trigger'),
     handle_manual_trigger),
    (HandlerMetadata(type=FORM_TRIGGER, name='Form Trigger',
                     description='Starts a workflow when a form is submitted', category='trigger'),
     handle_form_trigger),
    (HandlerMetadata(type=WEBHOOK_TRIGGER, name='Webhook Trigger',
                     description='Starts a workflow when a webhook is received', category='trigger'),
     handle_webhook_trigger),
    (HandlerMetadata(type=SCHEDULE_TRIGGER, name='Schedule Trigger',
                     description='Starts a workflow on a cron schedule', category='trigger'),
     handle_schedule_trigger),
]
