from __future__ import annotations

import smtplib
import ssl
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional

from gonews.logging import get_logger, mask_email

logger = get_logger(__name__)

OUTBOX_LIMIT = 100

_PURPOSE_SUBJECTS = {
    "registration": "Welcome to GoNews - Verify Your Account",
    "password_reset": "GoNews Password Reset - Verification Code",
}

_PURPOSE_INTRO = {
    "registration": "Thanks for signing up for GoNews! Use the code below to verify your email address.",
    "password_reset": "We received a request to reset your GoNews password. Use the code below to continue.",
}


@dataclass
class OutboxMessage:
    to: str
    subject: str
    text_body: str


class EmailService:
    """Transactional email for OTP codes.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Registration and password reset OTP emails
    - Fallback to logging when not configured (dev mode)
    - An in-memory outbox in test mode
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
        from_name: str = "GoNews",
        keep_outbox: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.outbox: Optional[Deque[OutboxMessage]] = (
            deque(maxlen=OUTBOX_LIMIT) if keep_outbox else None
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if self.outbox is not None:
            self.outbox.append(OutboxMessage(to_email, subject, text_body))

        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

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

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(
        self,
        to_email: str,
        *,
        name: Optional[str],
        code: str,
        purpose: str,
        expires_minutes: int,
    ) -> bool:
        subject = _PURPOSE_SUBJECTS.get(purpose, "GoNews Verification Code")
        intro = _PURPOSE_INTRO.get(purpose, "Use the code below to continue.")
        greeting = f"Hi {name}," if name else "Hi,"

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <p>{greeting}</p>
        <p>{intro}</p>
        <p style="font-size: 32px; letter-spacing: 8px; font-weight: 700;">{code}</p>
        <p>This code expires in {expires_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">GoNews</p>
    </div>
</body>
</html>
"""

        text_body = f"""{greeting}

{intro}

Your verification code: {code}

This code expires in {expires_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
GoNews
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str, *, name: Optional[str]) -> bool:
        subject = "Your GoNews password was changed"
        greeting = f"Hi {name}," if name else "Hi,"
        text_body = f"""{greeting}

The password for your GoNews account was just changed. If this wasn't you,
reset your password immediately.

---
GoNews
"""
        html_body = f"<p>{greeting}</p><p>The password for your GoNews account was just changed. If this wasn't you, reset your password immediately.</p>"
        return self._send_email(to_email, subject, html_body, text_body)
