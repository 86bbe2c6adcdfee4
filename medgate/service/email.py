from __future__ import annotations

import asyncio
import smtplib
import ssl
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from html import escape
from typing import Optional, Protocol

from medgate.config import Settings
from medgate.logging import get_logger, redact_email, sanitize_error_message

logger = get_logger(__name__)


class EmailDispatchError(Exception):
    """Raised when a message could not be handed to the mail server."""


class EmailDispatcher(Protocol):
    async def send(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> str: ...


class EmailService:
    """Transactional email over SMTP with bounded, retried delivery.

    Every attempt is capped by ``email_timeout_seconds`` and failed attempts are
    retried with exponential backoff up to ``email_max_attempts``, all within
    ``email_deadline_seconds``. Without an SMTP host the service runs in dev
    mode and only logs the message. A custom ``dispatcher`` replaces the SMTP
    transport while keeping the retry bounds.
    """

    def __init__(self, settings: Settings, *, dispatcher: Optional[EmailDispatcher] = None) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from_address or settings.smtp_user
        self.from_name = settings.email_from_name
        self.base_url = settings.frontend_url.rstrip("/")
        self.timeout = settings.email_timeout_seconds
        self.deadline = settings.email_deadline_seconds
        self.max_attempts = settings.email_max_attempts
        self.backoff = settings.email_backoff_seconds
        self.dispatcher = dispatcher

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline
        last_error: Optional[BaseException] = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            attempts = attempt
            timeout = min(self.timeout, remaining)
            try:
                return await asyncio.wait_for(
                    self._deliver_once(to_email, subject, html_body, text_body),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "email_attempt_timed_out",
                    to=redact_email(to_email),
                    attempt=attempt,
                    timeout_seconds=timeout,
                )
            except (EmailDispatchError, smtplib.SMTPException, ssl.SSLError, OSError) as exc:
                last_error = exc
                logger.warning(
                    "email_attempt_failed",
                    to=redact_email(to_email),
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                )
            if attempt < self.max_attempts and self.backoff:
                delay = min(self.backoff * (2 ** (attempt - 1)), deadline - loop.time())
                if delay > 0:
                    await asyncio.sleep(delay)
        logger.error(
            "email_dispatch_exhausted",
            to=redact_email(to_email),
            subject=subject,
            attempts=attempts,
            deadline_seconds=self.deadline,
        )
        raise EmailDispatchError(f"email delivery failed after {attempts} attempts") from last_error

    async def _deliver_once(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> str:
        if self.dispatcher is not None:
            return await self.dispatcher.send(to_email, subject, html_body, text_body)
        if not self.is_configured:
            message_id = f"dev-{uuid.uuid4()}"
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                message_id=message_id,
                body_preview=text_body[:200],
            )
            return message_id
        return await asyncio.to_thread(self._smtp_send, to_email, subject, html_body, text_body)

    def _smtp_send(self, to_email: str, subject: str, html_body: str, text_body: str) -> str:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        message_id = make_msgid()
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return message_id

    def _wrap_html(self, title: str, body: str) -> str:
        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px; font-family: sans-serif;">
        <h1>{escape(title)}</h1>
        {body}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{escape(self.from_name)}</p>
    </div>
</body>
</html>
"""

    async def send_verification_code(
        self, to_email: str, code: str, *, hospital_name: str, admin_name: str, expires_minutes: int
    ) -> str:
        subject = f"{self.from_name}: verify your hospital registration"
        html_body = self._wrap_html(
            "Verify your hospital registration",
            f"<p>Hello {escape(admin_name)},</p>"
            f"<p>Use this code to finish registering {escape(hospital_name)}:</p>"
            f'<p style="font-size: 32px; letter-spacing: 8px; font-weight: bold;">{escape(code)}</p>'
            f"<p>The code expires in {expires_minutes} minutes.</p>",
        )
        text_body = (
            f"Hello {admin_name},\n\n"
            f"Use this code to finish registering {hospital_name}: {code}\n\n"
            f"The code expires in {expires_minutes} minutes.\n"
        )
        return await self.send(to_email, subject, html_body, text_body)

    async def send_staff_invitation(
        self,
        to_email: str,
        *,
        first_name: str,
        hospital_name: str,
        role: str,
        employee_id: str,
        temporary_password: str,
    ) -> str:
        login_url = f"{self.base_url}/login"
        subject = f"{self.from_name}: your {hospital_name} account"
        html_body = self._wrap_html(
            f"Welcome to {hospital_name}",
            f"<p>Hello {escape(first_name)},</p>"
            f"<p>An account was created for you as <strong>{escape(role)}</strong> "
            f"(employee id {escape(employee_id)}).</p>"
            f"<p>Temporary password: <code>{escape(temporary_password)}</code></p>"
            f'<p>Sign in at <a href="{escape(login_url)}">{escape(login_url)}</a> '
            "and choose a new password.</p>",
        )
        text_body = (
            f"Hello {first_name},\n\n"
            f"An account was created for you at {hospital_name} as {role} "
            f"(employee id {employee_id}).\n\n"
            f"Temporary password: {temporary_password}\n\n"
            f"Sign in at {login_url} and choose a new password.\n"
        )
        return await self.send(to_email, subject, html_body, text_body)

    async def send_staff_password_reset(
        self, to_email: str, *, first_name: str, temporary_password: str
    ) -> str:
        login_url = f"{self.base_url}/login"
        subject = f"{self.from_name}: your password was reset"
        html_body = self._wrap_html(
            "Your password was reset",
            f"<p>Hello {escape(first_name)},</p>"
            f"<p>An administrator reset your password. Temporary password: "
            f"<code>{escape(temporary_password)}</code></p>"
            f'<p>Sign in at <a href="{escape(login_url)}">{escape(login_url)}</a> '
            "and choose a new password.</p>",
        )
        text_body = (
            f"Hello {first_name},\n\n"
            f"An administrator reset your password. Temporary password: {temporary_password}\n\n"
            f"Sign in at {login_url} and choose a new password.\n"
        )
        return await self.send(to_email, subject, html_body, text_body)

    async def send_welcome(self, to_email: str, *, admin_name: str, hospital_name: str, tenant_id: str) -> str:
        subject = f"{self.from_name}: {hospital_name} is ready"
        html_body = self._wrap_html(
            f"{hospital_name} is ready",
            f"<p>Hello {escape(admin_name)},</p>"
            f"<p>Your hospital is verified. Hospital id: <strong>{escape(tenant_id)}</strong>.</p>",
        )
        text_body = (
            f"Hello {admin_name},\n\n"
            f"{hospital_name} is verified. Hospital id: {tenant_id}.\n"
        )
        return await self.send(to_email, subject, html_body, text_body)
