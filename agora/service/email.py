from __future__ import annotations

import contextlib
import html
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterator, List, Optional, Tuple

from agora.config import Settings
from agora.logging import get_logger, redact_email

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_PAGE = """<!DOCTYPE html>
<html lang="en">
<body style="margin:0;background:#f4f5f7;font-family:Helvetica,Arial,sans-serif;color:#1d2430">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
    <tr><td align="center" style="padding:32px 12px">
      <table role="presentation" width="560" style="background:#ffffff;border-radius:8px;padding:32px">
        <tr><td><h2 style="margin-top:0">{title}</h2>{body}</td></tr>
        <tr><td style="padding-top:24px;font-size:12px;color:#6b7280">{sender}</td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>
"""
_CODE_STYLE = "font-size:30px;letter-spacing:8px;font-weight:bold;font-family:monospace"


class EmailService:
    """Transactional emails for the account flows.

    Without an SMTP host the message is only logged (dev mode). Transport
    failures are logged and reported as ``False``; they never raise.
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
        from_name: str = "Agora",
        base_url: Optional[str] = None,
        code_ttl_seconds: int = 300,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.code_ttl_seconds = code_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            code_ttl_seconds=settings.code_ttl_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self, title: str, paragraphs: List[str], highlight: Optional[str] = None
    ) -> Tuple[str, str]:
        """Return ``(html, text)`` bodies; ``highlight`` goes after the first paragraph."""
        blocks = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text = [title, ""]
        if highlight:
            blocks.insert(1, f'<p style="{_CODE_STYLE}">{html.escape(highlight)}</p>')
            text += paragraphs[:1] + ["", highlight, ""] + paragraphs[1:]
        else:
            text += paragraphs
        text += ["", "---", self.from_name]
        page = _PAGE.format(
            title=html.escape(title), body="".join(blocks), sender=html.escape(self.from_name)
        )
        return page, "\n".join(text)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(text_body or subject)
        msg.add_alternative(html_body, subtype="html")
        return msg

    @contextlib.contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        """Authenticated SMTP connection: STARTTLS on ``smtp_use_tls``, implicit TLS otherwise."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            yield server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Hand one message to the SMTP server; True once it was accepted."""
        recipient = redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                preview=(text_body or html_body)[:200],
            )
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connection() as server:
                server.sendmail(self.from_email, [to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_login_rejected", host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _code_lifetime(self) -> str:
        minutes, seconds = divmod(self.code_ttl_seconds, 60)
        if minutes and not seconds:
            return f"{minutes} minute" + ("s" if minutes != 1 else "")
        return f"{self.code_ttl_seconds} seconds"

    def send_reset_password_account(self, to_email: str, code: str) -> bool:
        """Send the one-time code for account recovery or a forgotten password."""
        subject = f"{code} is your {self.from_name} recovery code"
        html_body, text_body = self._render(
            "Recover your account",
            [
                "Use the code below to choose a new password:",
                f"The code expires in {self._code_lifetime()}.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            highlight=code,
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_notification_reset_password(self, to_email: str) -> bool:
        subject = f"Your {self.from_name} password was changed"
        html_body, text_body = self._render(
            "Password changed",
            [
                "The password of your account was just changed.",
                f"If this wasn't you, recover your account at {self.base_url} right away.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_detect_other_device(
        self,
        to_email: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        device_name: str,
    ) -> bool:
        """Warn the account owner about a sign-in from an unseen device."""
        subject = f"New sign-in to your {self.from_name} account"
        html_body, text_body = self._render(
            "New sign-in detected",
            [
                f"Your account was just signed in from {device_name}.",
                f"IP address: {ip_address or 'unknown'}",
                f"Browser: {user_agent or 'unknown'}",
                "If this wasn't you, change your password immediately.",
            ],
        )
        return self._send_email(to_email, subject, html_body, text_body)
