"""Notification delivery: user emails and admin alerts.

Backends:
    - console: logs emails (development, tests)
    - smtp: sends through aiosmtplib

Admin alerts are POSTed as a Slack-style payload to ADMIN_WEBHOOK_URL, or
logged when no URL is configured.

Every public method is best-effort: failures are logged, never raised.
"""

import logging
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiosmtplib
import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from access_manager.core.config import settings
from access_manager.services.events import (
    EscalationRequired,
    Event,
    ExpiryWarningDue,
    JobFailed,
    UserActivated,
    UserExpired,
    UserSnapshot,
)

logger = logging.getLogger("access_manager.notifications")

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"


class EmailBackend(ABC):
    """Abstract base class for email backends."""

    @abstractmethod
    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one email; returns True when delivered."""
        ...


class ConsoleEmailBackend(EmailBackend):
    """Logs emails instead of sending them."""

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.info("EMAIL (console) to=%s subject=%r\n%s", to, subject, text_body)
        return True


class SMTPEmailBackend(EmailBackend):
    """Sends emails via SMTP with optional STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_address: str,
        from_name: str,
        use_tls: bool = True,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.from_name = from_name
        self.use_tls = use_tls

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        message = MIMEMultipart("alternative")
        message["From"] = f"{self.from_name} <{self.from_address}>"
        message["To"] = to
        message["Subject"] = subject
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        await aiosmtplib.send(
            message,
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            start_tls=self.use_tls,
        )
        logger.info("Email sent via SMTP to %s", to)
        return True


def build_email_backend() -> EmailBackend:
    if settings.EMAIL_BACKEND == "smtp":
        return SMTPEmailBackend(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            from_address=settings.EMAIL_FROM_ADDRESS,
            from_name=settings.EMAIL_FROM_NAME,
            use_tls=settings.SMTP_USE_TLS,
        )
    if settings.EMAIL_BACKEND != "console":
        logger.warning("Unknown EMAIL_BACKEND %r, falling back to console", settings.EMAIL_BACKEND)
    return ConsoleEmailBackend()


class NotificationService:
    """Renders templates and delivers user emails and admin alerts."""

    def __init__(
        self,
        email_backend: Optional[EmailBackend] = None,
        admin_webhook_url: Optional[str] = None,
        app_name: Optional[str] = None,
        app_url: Optional[str] = None,
        access_duration_days: Optional[int] = None,
    ):
        self.email_backend = email_backend or build_email_backend()
        self.admin_webhook_url = admin_webhook_url if admin_webhook_url is not None else settings.ADMIN_WEBHOOK_URL
        self.app_name = app_name or settings.APP_NAME
        self.app_url = app_url or settings.APP_URL
        self.access_duration_days = access_duration_days or settings.ACCESS_DURATION_DAYS
        self.templates = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def _render(self, name: str, **context: Any) -> str:
        context.setdefault("app_name", self.app_name)
        context.setdefault("app_url", self.app_url)
        context.setdefault("access_duration_days", self.access_duration_days)
        return self.templates.get_template(name).render(**context)

    async def _send(self, user: UserSnapshot, subject: str, template: str, text_body: str) -> bool:
        try:
            html_body = self._render(template, user=user)
            return await self.email_backend.send_email(user.email, subject, html_body, text_body)
        except Exception as e:
            logger.error("Failed to send %s to %s: %s", template, user.email, e)
            return False

    async def notify_access_granted(self, user: UserSnapshot) -> bool:
        return await self._send(
            user,
            f"Your {self.app_name} access is ready!",
            "access_granted.html",
            f"Hi {user.full_name}, your access to {self.app_name} is active for "
            f"{self.access_duration_days} days. Open {self.app_url}",
        )

    async def notify_expiry_warning(self, user: UserSnapshot) -> bool:
        return await self._send(
            user,
            f"Your {self.app_name} access expires tomorrow",
            "expiry_warning.html",
            f"Hi {user.full_name}, your access to {self.app_name} expires within a day.",
        )

    async def notify_access_expired(self, user: UserSnapshot) -> bool:
        return await self._send(
            user,
            f"Your {self.app_name} access has expired",
            "access_expired.html",
            f"Hi {user.full_name}, your access to {self.app_name} has expired. "
            f"You can request access again at {self.app_url}",
        )

    def _admin_payload(self, event: Dict[str, Any]) -> Dict[str, Any]:
        blocks = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{event['type']}*\n{event['message']}"},
            }
        ]
        user = event.get("user")
        if user:
            blocks.append({
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Email:*\n{user.email}"},
                    {"type": "mrkdwn", "text": f"*Name:*\n{user.full_name}"},
                ],
            })
        if event.get("error"):
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:*\n```{event['error']}```"},
            })
        return {"text": f"[{self.app_name} Access Manager] {event['message']}", "blocks": blocks}

    async def notify_admin(self, event: Dict[str, Any]) -> bool:
        """Alert the admin channel. ``event`` needs ``type`` and ``message``."""
        if not self.admin_webhook_url:
            logger.warning("[Admin Alert] %s: %s", event.get("type"), event.get("message"))
            return False
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.post(self.admin_webhook_url, json=self._admin_payload(event))
                resp.raise_for_status()
            logger.info("Admin webhook sent: %s", event.get("type"))
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to send admin webhook: %s", e)
            return False


class NotificationDispatcher:
    """Delivers queued lifecycle events through a NotificationService."""

    def __init__(self, notifier: NotificationService):
        self.notifier = notifier

    async def dispatch(self, events: Iterable[Event]) -> int:
        """Deliver each event; returns how many were delivered."""
        delivered = 0
        for event in events:
            try:
                if await self._deliver(event):
                    delivered += 1
            except Exception as e:
                logger.error("Failed to deliver %s: %s", type(event).__name__, e)
        return delivered

    async def _deliver(self, event: Event) -> bool:
        if isinstance(event, UserActivated):
            return await self.notifier.notify_access_granted(event.user)
        if isinstance(event, UserExpired):
            return await self.notifier.notify_access_expired(event.user)
        if isinstance(event, ExpiryWarningDue):
            return await self.notifier.notify_expiry_warning(event.user)
        if isinstance(event, EscalationRequired):
            return await self.notifier.notify_admin({
                "type": "Manual Intervention Required",
                "message": f"Automation failed {event.attempts} times for {event.user.email}",
                "user": event.user,
                "error": event.last_error,
            })
        if isinstance(event, JobFailed):
            return await self.notifier.notify_admin({
                "type": "Automation Job Error",
                "message": "The access automation job failed",
                "error": event.error,
            })
        logger.warning("No handler for event %r", event)
        return False
