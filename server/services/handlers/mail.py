"""Email node handler - SMTP delivery in a worker thread."""

import asyncio
import smtplib
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Callable, List, Optional

from constants import EMAIL_SEND
from core.logging import get_logger
from services.execution.errors import NodeErrorCode
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, failure_result, success_result,
)

logger = get_logger(__name__)


@dataclass
class SmtpSettings:
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    from_email: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)


_smtp = SmtpSettings()
_smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None


def configure_smtp(host: Optional[str], port: int, user: Optional[str],
                   password: Optional[str], from_email: Optional[str]) -> None:
    global _smtp
    _smtp = SmtpSettings(host=host, port=port, user=user, password=password, from_email=from_email)


def set_smtp_factory(factory: Optional[Callable[..., smtplib.SMTP]]) -> None:
    """Override the SMTP client constructor (tests)."""
    global _smtp_factory
    _smtp_factory = factory


def _recipients(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(',') if part.strip()]


def build_message(sender: str, recipients: List[str], subject: str, body: str,
                  reply_to: Optional[str] = None) -> EmailMessage:
    message = EmailMessage()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message['Message-ID'] = make_msgid()
    if reply_to:
        message['Reply-To'] = reply_to
    if '<' in body and '>' in body:
        message.set_content('This message requires an HTML capable client.')
        message.add_alternative(body, subtype='html')
    else:
        message.set_content(body)
    return message


def send_message(settings: SmtpSettings, message: EmailMessage) -> None:
    if _smtp_factory is not None:
        factory = _smtp_factory
    else:
        factory = smtplib.SMTP_SSL if settings.port == 465 else smtplib.SMTP
    with factory(settings.host, settings.port, timeout=30) as server:
        if settings.port != 465 and _smtp_factory is None:
            server.starttls()
        server.login(settings.user, settings.password)
        server.send_message(message)


async def handle_email_send(context: NodeExecutionContext) -> NodeExecutionResult:
    config = context.resolved_config
    to, subject, body = config.get('to'), config.get('subject'), config.get('body')

    if not to:
        await context.log('error', 'Missing recipient in email configuration')
        return failure_result(NodeErrorCode.MISSING_CONFIG, 'Email recipient (to) is required')
    if not subject:
        await context.log('error', 'Missing subject in email configuration')
        return failure_result(NodeErrorCode.MISSING_CONFIG, 'Email subject is required')
    if not body:
        await context.log('error', 'Missing body in email configuration')
        return failure_result(NodeErrorCode.MISSING_CONFIG, 'Email body is required')

    settings = _smtp
    if not settings.configured:
        return failure_result(NodeErrorCode.MISSING_CONFIG,
                              'SMTP configuration missing. Set SMTP_HOST, SMTP_USER and SMTP_PASS.')

    recipients = _recipients(to)
    sender = config.get('from') or settings.from_email or settings.user
    message = build_message(sender, recipients, str(subject), str(body), config.get('replyTo'))

    try:
        await asyncio.to_thread(send_message, settings, message)
    except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, socket.timeout,
            ConnectionError) as e:
        await context.log('error', 'Failed to send email', {"error": str(e), "to": recipients})
        return failure_result(NodeErrorCode.CONNECTION_FAILED,
                              f"Failed to send email: {e}", retryable=True)
    except smtplib.SMTPResponseException as e:
        await context.log('error', 'Failed to send email', {"error": str(e), "to": recipients})
        # 4xx replies are transient on SMTP
        return failure_result(NodeErrorCode.OPERATION_FAILED, f"Failed to send email: {e}",
                              retryable=400 <= e.smtp_code < 500)
    except smtplib.SMTPException as e:
        await context.log('error', 'Failed to send email', {"error": str(e), "to": recipients})
        return failure_result(NodeErrorCode.OPERATION_FAILED, f"Failed to send email: {e}")

    await context.log('info', 'Email sent', {"to": recipients, "subject": subject})
    return success_result({
        "sent": True,
        "messageId": message['Message-ID'],
        "recipients": recipients,
        "subject": subject,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


EMAIL_HANDLERS = [
    (HandlerMetadata(type=EMAIL_SEND, name='Send Email',
                     description='Sends an email notification via SMTP', category='integration'),
     handle_email_send),
]
