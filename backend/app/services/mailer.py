"""Outbound SMTP mail for login codes.

Used only from the background worker; request handlers never wait on SMTP.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.config import Settings

logger = logging.getLogger(__name__)


class MailDeliveryError(RuntimeError):
    """SMTP refused or failed to deliver a message."""


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        return bool(self._settings.smtp_host)

    @property
    def sender(self) -> str:
        address = self._settings.mail_from or self._settings.smtp_user or "no-reply@localhost"
        return f"{self._settings.mail_from_name} <{address}>"

    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        """Send one message. Returns False when SMTP is not configured.

        Raises MailDeliveryError if the server rejects or drops the message.
        """
        if not self.configured:
            logger.warning("SMTP not configured, not sending '%s' to %s", subject, to)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))

        s = self._settings
        try:
            if s.smtp_ssl:
                server = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds)
            else:
                server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds)
            with server:
                if not s.smtp_ssl:
                    server.starttls()
                if s.smtp_user:
                    server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery failed: {type(exc).__name__}") from exc

        logger.info("Mail sent to %s", to)
        return True

    def send_otp(self, to: str, code: str, ttl_minutes: int = 10) -> bool:
        if not self.configured:
            # Development fallback so a local login is still possible
            logger.warning("SMTP not configured; login code for %s logged at DEBUG", to)
            logger.debug("Login code for %s: %s", to, code)
            return False

        subject = "Your admin login code"
        text = (
            f"Use this 6-digit code to sign in: {code}\n\n"
            f"This code will expire in {ttl_minutes} minutes. "
            "If you didn't request it, ignore this email.\n"
        )
        html = (
            '<div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif">'
            "<h2>Admin Login Code</h2>"
            "<p>Use this 6-digit code to sign in:</p>"
            f'<p style="font-size:24px;font-weight:bold;letter-spacing:3px">{code}</p>'
            f"<p>This code will expire in {ttl_minutes} minutes. "
            "If you didn't request it, ignore this email.</p>"
            "</div>"
        )
        return self.send(to, subject, text, html)
