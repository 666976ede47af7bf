from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from linesauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; font-weight: 700; letter-spacing: 6px; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Notifier for OTP and account emails.

    Supports:
    - SMTP with TLS/SSL
    - Registration and password-reset codes
    - Welcome email after registration
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
        from_name: str = "Lines",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
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
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

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
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render_code_email(
        self, to_email: str, subject: str, title: str, intro: str, code: str, ttl_minutes: int
    ) -> bool:
        html_body = _HTML_TEMPLATE.format(
            title=title,
            body=(
                f"<p>{intro}</p>"
                f'<p class="code">{code}</p>'
                f"<p>This code will expire in {ttl_minutes} minutes.</p>"
                "<p>If you didn't request this, you can safely ignore this email.</p>"
            ),
            sender=self.from_name,
        )
        text_body = f"""{title}

{intro}

    {code}

This code will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_registration_otp(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        """Send the code that confirms a new account."""
        return self._render_code_email(
            to_email,
            f"Your {self.from_name} verification code",
            "Confirm your email",
            "Use the code below to finish creating your account:",
            code,
            ttl_minutes,
        )

    def send_password_reset_otp(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        """Send the code that authorizes a password reset."""
        return self._render_code_email(
            to_email,
            f"Reset your {self.from_name} password",
            "Reset your password",
            "We received a request to reset your password. Enter this code to continue:",
            code,
            ttl_minutes,
        )

    def send_welcome(self, to_email: str, full_name: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        html_body = _HTML_TEMPLATE.format(
            title=f"Welcome, {full_name}",
            body=(
                "<p>Your account is ready.</p>"
                f'<p>Sign in at <a href="{self.base_url}">{self.base_url}</a>.</p>'
            ),
            sender=self.from_name,
        )
        text_body = f"""Welcome, {full_name}

Your account is ready. Sign in at {self.base_url}.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)
