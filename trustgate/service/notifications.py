from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from trustgate.config import Settings
from trustgate.logging import get_logger

logger = get_logger(__name__)

CRITICAL_ACTION_VERIFICATION = "critical_action_verification"
LOGIN_ALERT = "login_alert"

_ACTION_LABELS = {
    "tenant_deletion": "delete your organization",
    "account_deletion": "delete your account",
    "data_export": "export your data",
}

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class Notifier(Protocol):
    async def send(self, recipient: str, template: str, data: Dict[str, Any]) -> bool: ...


def _html_page(app_name: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
{body}
        <div class="footer">
            <p>{html.escape(app_name)}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailNotifier:
    """Transactional security email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Critical action verification codes
    - New login alerts
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Trustgate",
        app_name: str = "Trustgate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.app_name = app_name
        self.base_url = base_url or "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            app_name=settings.app_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, data: Dict[str, Any]) -> Tuple[str, str, str]:
        """Return (subject, html_body, text_body) for ``template``."""
        if template == CRITICAL_ACTION_VERIFICATION:
            return self._render_critical_action(data)
        if template == LOGIN_ALERT:
            return self._render_login_alert(data)
        raise ValueError(f"unknown email template: {template}")

    def _render_critical_action(self, data: Dict[str, Any]) -> Tuple[str, str, str]:
        action = _ACTION_LABELS.get(str(data.get("action")), "complete a sensitive action")
        code = str(data.get("code", ""))
        minutes = int(data.get("expires_in_minutes", 10))
        target = data.get("tenant_name")
        target_line = f" for {target}" if target else ""

        subject = f"Your {self.app_name} verification code"
        html_body = _html_page(
            self.app_name,
            f"""        <h1>Confirm this action</h1>
        <p>Someone asked to {html.escape(action)}{html.escape(target_line)}. Enter this code to continue:</p>
        <p class="code">{html.escape(code)}</p>
        <p>This code will expire in {minutes} minutes.</p>
        <p>If you didn't request this, change your password and contact support.</p>""",
        )
        text_body = f"""Confirm this action

Someone asked to {action}{target_line}. Enter this code to continue:

{code}

This code will expire in {minutes} minutes.

If you didn't request this, change your password and contact support.

---
{self.app_name}
"""
        return subject, html_body, text_body

    def _render_login_alert(self, data: Dict[str, Any]) -> Tuple[str, str, str]:
        device = data.get("device_name") or "Unknown Device"
        location = data.get("location") or "Unknown location"
        ip = data.get("ip_address") or "unknown"
        when = data.get("login_time") or ""
        reasons = ", ".join(data.get("reasons") or []) or "new sign-in"
        suspicious = bool(data.get("is_suspicious"))
        sessions_url = f"{self.base_url}/settings/security"

        subject = (
            f"Suspicious sign-in to your {self.app_name} account"
            if suspicious
            else f"New sign-in to your {self.app_name} account"
        )
        html_body = _html_page(
            self.app_name,
            f"""        <h1>{html.escape(subject)}</h1>
        <p>We noticed a sign-in with: {html.escape(reasons)}.</p>
        <ul>
            <li>Device: {html.escape(str(device))}</li>
            <li>Location: {html.escape(str(location))}</li>
            <li>IP address: {html.escape(str(ip))}</li>
            <li>Time: {html.escape(str(when))}</li>
        </ul>
        <p>If this was you, no action is needed. Otherwise review your sessions at
        <a href="{html.escape(sessions_url)}">{html.escape(sessions_url)}</a>.</p>""",
        )
        text_body = f"""{subject}

We noticed a sign-in with: {reasons}.

Device: {device}
Location: {location}
IP address: {ip}
Time: {when}

If this was you, no action is needed. Otherwise review your sessions at:
{sessions_url}

---
{self.app_name}
"""
        return subject, html_body, text_body

    async def send(self, recipient: str, template: str, data: Dict[str, Any]) -> bool:
        subject, html_body, text_body = self.render(template, data)
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(recipient),
                template=template,
                subject=subject,
            )
            return True
        return await asyncio.to_thread(
            self._send_email, recipient, subject, html_body, text_body
        )

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Blocking SMTP send; True when the server accepted the message."""
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connection_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


class NotificationDispatcher:
    """Fire-and-forget delivery of notifications.

    ``submit`` schedules the send on the running loop and returns at once; the
    caller's flow never waits on, or fails because of, email delivery.
    """

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, recipient: str, template: str, data: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.notifier.send(recipient, template, data)
        )
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(t, template))
        return task

    def _on_done(self, task: asyncio.Task, template: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("notification_cancelled", template=template)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "notification_failed",
                template=template,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        elif task.result() is False:
            logger.warning("notification_not_delivered", template=template)

    async def drain(self) -> None:
        """Wait for every submitted notification to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
