from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from idgate.logging import email_digest, get_logger

logger = get_logger(__name__)


class EmailService:
    """Plain-text transactional mail over SMTP.

    When no SMTP host is configured the message is logged (without the link)
    instead of sent, which is what local runs and tests rely on.
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
        from_name: str = "idgate",
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

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", email_hash=email_digest(to_email), subject=subject)
            return True

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", email_hash=email_digest(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                email_hash=email_digest(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", email_hash=email_digest(to_email), subject=subject)
        return True

    def send_verification_link(self, to_email: str, verify_url: str, ttl_minutes: int) -> bool:
        body = (
            "Verify your email address\n\n"
            "Please confirm your email address by visiting the link below:\n\n"
            f"{verify_url}\n\n"
            f"This link will expire in {ttl_minutes} minutes.\n\n"
            "If you did not create an account, no further action is required.\n"
        )
        return self._send_email(to_email, "Verify Email Address", body)

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?{urlencode({'token': token, 'email': to_email})}"
        body = (
            "Reset your password\n\n"
            "You are receiving this email because we received a password reset "
            "request for your account:\n\n"
            f"{reset_url}\n\n"
            f"This password reset link will expire in {ttl_minutes} minutes.\n\n"
            "If you did not request a password reset, no further action is required.\n"
        )
        return self._send_email(to_email, "Reset Password Notification", body)
