from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from docshield.config import Settings
from docshield.logging import get_logger, hash_identifier

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification, password reset and two-factor notices
    - Logging the message instead of sending when SMTP is not configured
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
        from_name: str = "DocShield",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Send a message; returns False on any delivery failure."""
        if not self.is_configured:
            # Dev mode: the link is logged but the recipient is not
            logger.info(
                "email_dev_mode",
                to_hash=hash_identifier(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to_hash=hash_identifier(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to_hash=hash_identifier(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to_hash=hash_identifier(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to_hash=hash_identifier(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to_hash=hash_identifier(to_email), subject=subject)
        return True

    def send_verification_email(self, to_email: str, username: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email/{token}"
        text_body = f"""Hello {username},

Please verify your email address by visiting the link below:

{verify_url}

This link will expire in 24 hours.

---
DocShield
"""
        html_body = (
            f"<p>Hello {username},</p>"
            f'<p>Please verify your email address: <a href="{verify_url}">{verify_url}</a></p>'
            "<p>This link will expire in 24 hours.</p>"
        )
        return self._send_email(to_email, "Verify your email address", text_body, html_body)

    def send_password_reset_email(self, to_email: str, username: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        text_body = f"""Hello {username},

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in 1 hour. If you didn't request this, you can ignore this email.

---
DocShield
"""
        html_body = (
            f"<p>Hello {username},</p>"
            f'<p>Reset your password: <a href="{reset_url}">{reset_url}</a></p>'
            "<p>This link will expire in 1 hour.</p>"
        )
        return self._send_email(to_email, "Password Reset Request", text_body, html_body)

    def send_two_factor_enabled(self, to_email: str, username: str) -> bool:
        text_body = f"""Hello {username},

Two-factor authentication has been enabled on your DocShield account.

If you didn't make this change, please contact support immediately.

---
DocShield
"""
        return self._send_email(to_email, "Two-Factor Authentication Enabled", text_body)
