from __future__ import annotations

import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sportauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    <p>{intro}</p>
    <p style="margin: 30px 0;"><a href="{url}">{action}</a></p>
    <p>This link will expire in {expiry}.</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">
      {sender}<br>If the link doesn't work, copy and paste this URL: {url}
    </p>
  </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{title}

{intro}

{url}

This link will expire in {expiry}.

---
{sender}
"""


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail for account recovery and verification links.

    Sending is fire-and-forget: ``send_*`` queue the message on a small
    worker pool and return immediately. Without SMTP configuration the
    message is logged instead of sent.
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
        from_name: str = "Sportification",
        base_url: Optional[str] = None,
        token_ttl_hours: int = 24,
        max_workers: int = 2,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.token_ttl_hours = token_ttl_hours
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sportauth-email"
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(exc, "recipients", {}) or {}),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _submit(self, to_email: str, subject: str, **fields) -> Future:
        fields.setdefault("sender", self.from_name)
        return self._executor.submit(
            self._deliver,
            to_email,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_password_reset(self, to_email: str, token: str) -> Future:
        return self._submit(
            to_email,
            f"Reset your {self.from_name} password",
            title="Reset your password",
            intro="We received a request to reset your password. "
            "Use the link below to choose a new one. "
            "If you didn't request this, you can ignore this email.",
            action="Reset Password",
            url=f"{self.base_url}/reset-password?token={token}",
            expiry=f"{self.token_ttl_hours} hours",
        )

    def send_email_verification(self, to_email: str, token: str) -> Future:
        return self._submit(
            to_email,
            f"Verify your {self.from_name} email",
            title="Verify your email",
            intro="Please confirm your email address using the link below.",
            action="Verify Email",
            url=f"{self.base_url}/verify-email?token={token}",
            expiry=f"{self.token_ttl_hours} hours",
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
