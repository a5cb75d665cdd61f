from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Dict, Optional, Protocol

from idkeeper.config import Settings, VerificationMode
from idkeeper.logging import get_logger

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    MFA_CODE = "mfa_code"


class Notifier(Protocol):
    def deliver(self, recipient: str, kind: NotificationKind, code: str) -> bool: ...


@dataclass(frozen=True)
class _Template:
    subject: str
    heading: str
    intro: str
    expiry: str
    link_param: Optional[str] = None


_TEMPLATES: Dict[NotificationKind, _Template] = {
    NotificationKind.EMAIL_VERIFICATION: _Template(
        subject="Verify your email address",
        heading="Verify your email",
        intro="Thanks for signing up! Use the {artifact} below to verify your email address.",
        expiry="This {artifact} expires in {window}.",
        link_param="verify_code",
    ),
    NotificationKind.PASSWORD_RESET: _Template(
        subject="Reset your password",
        heading="Reset your password",
        intro="We received a request to reset your password. Use the {artifact} below to choose a new one.",
        expiry="This {artifact} expires in {window}. If you didn't request this, you can ignore this email.",
        link_param="reset_code",
    ),
    NotificationKind.MFA_CODE: _Template(
        subject="Your sign-in code",
        heading="Confirm your sign-in",
        intro="Enter the {artifact} below to finish signing in.",
        expiry="This {artifact} expires in {window}. If this wasn't you, change your password.",
    ),
}

_DEFAULT_WINDOWS: Dict[NotificationKind, timedelta] = {
    NotificationKind.EMAIL_VERIFICATION: timedelta(hours=24),
    NotificationKind.PASSWORD_RESET: timedelta(hours=24),
    NotificationKind.MFA_CODE: timedelta(minutes=10),
}


def describe_window(window: timedelta) -> str:
    """Render a validity window as "24 hours" or "10 minutes"."""
    minutes = int(window.total_seconds() // 60)
    if minutes >= 60 and minutes % 60 == 0:
        value, unit = minutes // 60, "hour"
    else:
        value, unit = max(minutes, 1), "minute"
    return f"{value} {unit}" + ("" if value == 1 else "s")


def notification_windows(settings: Settings) -> Dict[NotificationKind, timedelta]:
    """Validity windows quoted in each email, from the configured code lifetimes."""
    if settings.email_verification_mode == VerificationMode.TOKEN:
        verification = timedelta(hours=settings.verification_token_ttl_hours)
    else:
        verification = timedelta(hours=settings.email_code_ttl_hours)
    return {
        NotificationKind.EMAIL_VERIFICATION: verification,
        NotificationKind.PASSWORD_RESET: timedelta(hours=settings.reset_code_ttl_hours),
        NotificationKind.MFA_CODE: timedelta(minutes=settings.mfa_code_ttl_minutes),
    }


class EmailService:
    """SMTP-backed notification gateway.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Email verification, password reset and MFA code templates
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "idkeeper",
        base_url: Optional[str] = None,
        expiry_windows: Optional[Dict[NotificationKind, timedelta]] = None,
        verification_artifact: str = "code",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.expiry_windows = {**_DEFAULT_WINDOWS, **(expiry_windows or {})}
        # "link" when verification emails carry a signed token instead of a code
        self.verification_artifact = verification_artifact

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def deliver(self, recipient: str, kind: NotificationKind, code: str) -> bool:
        """Render the template for ``kind`` and send it to ``recipient``."""
        kind = NotificationKind(kind)
        template = _TEMPLATES[kind]
        html_body, text_body = self._render(kind, code)
        return self._send_email(recipient, template.subject, html_body, text_body)

    def _render(self, kind: NotificationKind, code: str) -> tuple[str, str]:
        template = _TEMPLATES[kind]
        artifact = (
            self.verification_artifact
            if kind == NotificationKind.EMAIL_VERIFICATION
            else "code"
        )
        intro = template.intro.format(artifact=artifact)
        expiry = template.expiry.format(
            artifact=artifact, window=describe_window(self.expiry_windows[kind])
        )
        link = (
            f"{self.base_url}/?{template.link_param}={code}" if template.link_param else None
        )
        link_html = (
            f'<p>Or open <a href="{link}">this link</a>.</p>' if link else ""
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{template.heading}</h1>
        <p>{intro}</p>
        <p style="font-size: 20px; font-family: monospace; margin: 30px 0;">{code}</p>
        {link_html}
        <p>{expiry}</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{self.from_name}</p>
    </div>
</body>
</html>
"""
        text_lines = [template.heading, "", intro, "", code, ""]
        if link:
            text_lines += [link, ""]
        text_lines += [expiry, "", "---", self.from_name]
        return html_body, "\n".join(text_lines)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True
