from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.config import Settings
from authcore.logging import email_digest, get_logger
from authcore.service.events import (
    PASSWORD_CHANGED,
    PASSWORD_RESET_REQUESTED,
    USER_DELETED,
    USER_REGISTERED,
    EventBus,
    PasswordChanged,
    PasswordResetRequested,
    UserDeleted,
    UserRegistered,
)

logger = get_logger(__name__)


class EmailService:
    """Transactional account mail over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which is what local development and the test suite rely on.
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
        from_name: str = "authcore",
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
        self.outbox: list[tuple[str, str]] = []

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

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text message. Returns False instead of raising on SMTP errors."""
        if not self.is_configured:
            self.outbox.append((to_email, subject))
            logger.info(
                "email_dev_mode",
                email_hash=email_digest(to_email),
                subject=subject,
                body_preview=text_body[:200],
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                email_hash=email_digest(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                email_hash=email_digest(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", email_hash=email_digest(to_email), subject=subject)
        return True

    def send_welcome(self, to_email: str, *, needs_verification: bool) -> bool:
        subject = f"Welcome to {self.from_name}"
        lines = [
            f"Welcome to {self.from_name}!",
            "",
            "Your account has been created.",
        ]
        if needs_verification:
            lines += [
                "",
                "Please confirm this address to finish setting up your account:",
                f"{self.base_url}/verify-email",
            ]
        lines += ["", "---", self.from_name, ""]
        return self._send_email(to_email, subject, "\n".join(lines))

    def send_account_deleted(self, to_email: str) -> bool:
        subject = f"Your {self.from_name} account was deleted"
        text_body = (
            f"Your {self.from_name} account has been deleted and every device has "
            "been signed out.\n\n"
            "If you didn't make this change, please contact support immediately.\n\n"
            f"---\n{self.from_name}\n"
        )
        return self._send_email(to_email, subject, text_body)

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Reset your {self.from_name} password"
        text_body = (
            "We received a request to reset your password. Visit the link below "
            "to choose a new one:\n\n"
            f"{reset_url}\n\n"
            f"This link will expire in {expires_minutes} minutes.\n\n"
            "If you didn't request this, you can safely ignore this email.\n\n"
            f"---\n{self.from_name}\n"
        )
        return self._send_email(to_email, subject, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        subject = f"Your {self.from_name} password was changed"
        text_body = (
            "The password for your account was just changed and every device "
            "has been signed out.\n\n"
            "If you didn't make this change, reset your password and contact "
            "support immediately.\n\n"
            f"---\n{self.from_name}\n"
        )
        return self._send_email(to_email, subject, text_body)


def register_email_handlers(bus: EventBus, email: EmailService) -> None:
    """Subscribe the account mails to their domain events."""

    def _on_registered(event: UserRegistered) -> None:
        email.send_welcome(event.email, needs_verification=not event.email_verified)

    def _on_deleted(event: UserDeleted) -> None:
        email.send_account_deleted(event.email)

    def _on_reset_requested(event: PasswordResetRequested) -> None:
        email.send_password_reset(
            event.email, event.token, expires_minutes=event.expires_minutes
        )

    def _on_password_changed(event: PasswordChanged) -> None:
        email.send_password_changed(event.email)

    bus.subscribe(USER_REGISTERED, _on_registered)
    bus.subscribe(USER_DELETED, _on_deleted)
    bus.subscribe(PASSWORD_RESET_REQUESTED, _on_reset_requested)
    bus.subscribe(PASSWORD_CHANGED, _on_password_changed)
