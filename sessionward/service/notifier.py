from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.storage.models import Principal

logger = get_logger(__name__)


class Notifier(Protocol):
    """Out-of-band delivery of one-time tokens. Fire-and-forget from the caller's view."""

    def send_verification(self, principal: Principal, token: str) -> None: ...

    def send_password_reset(self, principal: Principal, token: str) -> None: ...


class NullNotifier:
    """Drops every message; for deployments where delivery happens elsewhere."""

    def send_verification(self, principal: Principal, token: str) -> None:
        logger.debug("notification_dropped", kind="verification", principal_id=principal.id)

    def send_password_reset(self, principal: Principal, token: str) -> None:
        logger.debug("notification_dropped", kind="password_reset", principal_id=principal.id)


def redact_address(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP delivery of verification and reset links.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when no SMTP host is configured (dev mode)
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
        from_name: str = "Sessionward",
        base_url: Optional[str] = None,
        verification_ttl_minutes: int = 60 * 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

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
            base_url=settings.app_base_url,
            verification_ttl_minutes=settings.email_verification_ttl_minutes,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _describe_ttl(minutes: int) -> str:
        if minutes % 60 == 0:
            hours = minutes // 60
            return f"{hours} hour" + ("s" if hours != 1 else "")
        return f"{minutes} minutes"

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email via SMTP. Returns True on success."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_address(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_address(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_address(to_email), subject=subject)
        return True

    def send_verification(self, principal: Principal, token: str) -> None:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        text_body = f"""Verify your email address

Please confirm this address by visiting the link below:

{verify_url}

This link will expire in {self._describe_ttl(self.verification_ttl_minutes)}.
"""
        self._send_email(principal.email, "Verify your email address", text_body)

    def send_password_reset(self, principal: Principal, token: str) -> None:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {self._describe_ttl(self.reset_ttl_minutes)}.

If you didn't request this, you can safely ignore this email.
"""
        self._send_email(principal.email, "Reset your password", text_body)
