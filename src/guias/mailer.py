"""Outbound email delivery for password reset codes."""

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class SmtpEmailSender:
    """Send HTML mail through an SMTP relay with STARTTLS."""

    def __init__(
        self,
        server: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 20.0,
    ) -> None:
        self.server = server
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send_email(self, to: str, subject: str, html_body: str) -> bool:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as client:
                if self.use_tls:
                    client.starttls()
                if self.username:
                    client.login(self.username, self.password or "")
                client.send_message(message)
        except (smtplib.SMTPException, OSError):
            logger.exception("failed to send email to %s via %s", to, self.server)
            return False
        logger.info("email sent to %s", to)
        return True


class ResendEmailSender:
    """Send HTML mail through the Resend HTTP API."""

    def __init__(self, api_key: str, sender: str, timeout: float = 20.0) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send_email(self, to: str, subject: str, html_body: str) -> bool:
        try:
            response = httpx.post(
                RESEND_API_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError:
            logger.exception("error while sending email to %s", to)
            return False
        if response.status_code not in (200, 201):
            logger.error("failed to send email via Resend: %s", response.text)
            return False
        logger.info("email sent to %s", to)
        return True


def build_email_sender(settings):
    """Create the email sender selected by ``EMAIL_BACKEND``."""
    if settings.email_backend == "resend":
        if not settings.resend_api_key:
            raise ValueError("RESEND_API_KEY must be set when EMAIL_BACKEND=resend")
        return ResendEmailSender(
            settings.resend_api_key,
            settings.email_sender,
            timeout=settings.email_timeout_seconds,
        )
    return SmtpEmailSender(
        settings.smtp_server,
        settings.smtp_port,
        settings.email_sender,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        timeout=settings.email_timeout_seconds,
    )
