from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from tokenward.config import Settings
from tokenward.logging import get_logger, redact_email

logger = get_logger(__name__)


class Mailer(Protocol):
    def send_verification_email(self, to_email: str, token: str) -> bool: ...

    def send_password_reset_email(self, to_email: str, token: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p style="margin: 30px 0;"><a href="{url}">{action}</a></p>
    <p>This link will expire in {expiry}.</p>
    <p>{outro}</p>
    <p style="font-size: 12px; color: #5b6470;">If the link doesn't work, copy and paste this URL: {url}</p>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

This link will expire in {expiry}.

{outro}
"""


def _describe_ttl(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" + ("s" if hours != 1 else "")
    minutes = max(1, seconds // 60)
    return f"{minutes} minute" + ("s" if minutes != 1 else "")


class EmailService:
    """Transactional email for verification and password reset links.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host or sender is
    configured the message is logged instead, which is the dev-mode default.
    Send failures are logged and reported as False, never raised.
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
        from_name: str = "Tokenward",
        base_url: str = "http://localhost:8000",
        verification_ttl_seconds: int = 24 * 60 * 60,
        reset_ttl_seconds: int = 60 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.verification_ttl_seconds = verification_ttl_seconds
        self.reset_ttl_seconds = reset_ttl_seconds

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
            verification_ttl_seconds=settings.verification_token_ttl_seconds,
            reset_ttl_seconds=settings.reset_token_ttl_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/verify-email?token={quote(token)}"

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(token)}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render_and_send(self, to_email: str, subject: str, **parts: str) -> bool:
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**parts),
            _TEXT_TEMPLATE.format(**parts),
        )

    def send_verification_email(self, to_email: str, token: str) -> bool:
        return self._render_and_send(
            to_email,
            f"Verify your {self.from_name} email",
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your address using the link below.",
            url=self.verification_url(token),
            action="Verify Email",
            expiry=_describe_ttl(self.verification_ttl_seconds),
            outro="If you didn't create an account, you can ignore this email.",
        )

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        return self._render_and_send(
            to_email,
            f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro="We received a request to reset your password. Choose a new one using the link below.",
            url=self.reset_url(token),
            action="Reset Password",
            expiry=_describe_ttl(self.reset_ttl_seconds),
            outro="If you didn't request this, you can safely ignore this email.",
        )
