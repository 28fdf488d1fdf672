from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from reminder_service.config import settings
from reminder_service.core.tiers import ReminderTier


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / 'templates' / 'email'
TEMPLATE_NAME = 'session_reminder'

_environment = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=('html',), default_for_string=False),
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_reminder(context: dict[str, Any]) -> tuple[str, str]:
    text_body = _environment.get_template(f'{TEMPLATE_NAME}.txt').render(**context)
    html_body = _environment.get_template(f'{TEMPLATE_NAME}.html').render(**context)
    return text_body, html_body


class EmailSender(ABC):
    name: str

    @abstractmethod
    def send(self, recipient: str, tier: ReminderTier, context: dict[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError


class SmtpEmailSender(EmailSender):
    name = 'smtp'

    def __init__(
        self,
        host: str,
        port: int,
        *,
        username: str = '',
        password: str = '',
        use_tls: bool = True,
        sender: str = '',
        timeout: int = 15,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or username
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def build_message(self, recipient: str, context: dict[str, Any]) -> EmailMessage:
        text_body, html_body = render_reminder(context)
        message = EmailMessage()
        message['Subject'] = context.get('subject') or 'Session Reminder'
        message['From'] = self.sender
        message['To'] = recipient
        message.set_content(text_body)
        message.add_alternative(html_body, subtype='html')
        return message

    def send(self, recipient: str, tier: ReminderTier, context: dict[str, Any]) -> bool:
        message = self.build_message(recipient, context)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning('email_send_failed tier=%s recipient=%s error=%s', tier.value, recipient, exc)
            return False
        logger.debug('email_sent tier=%s recipient=%s', tier.value, recipient)
        return True


class LogEmailSender(EmailSender):
    """Used when email delivery is disabled: renders and logs instead of sending."""

    name = 'log'

    def is_configured(self) -> bool:
        return False

    def send(self, recipient: str, tier: ReminderTier, context: dict[str, Any]) -> bool:
        render_reminder(context)
        logger.info('email_dry_run tier=%s recipient=%s subject=%s', tier.value, recipient, context.get('subject'))
        return True


def build_email_sender() -> EmailSender:
    if not settings.email_enabled:
        return LogEmailSender()
    return SmtpEmailSender(
        settings.smtp_host,
        settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        sender=settings.email_from,
        timeout=settings.smtp_timeout_seconds,
    )
