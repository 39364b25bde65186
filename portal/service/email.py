from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from portal.config import Settings
from portal.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <style>
        body {{ margin: 0; background: #f4f6f8; font-family: Arial, Helvetica, sans-serif; color: #22303c; }}
        .card {{ max-width: 560px; margin: 32px auto; background: #ffffff; border-radius: 6px; padding: 32px; }}
        .action {{ display: inline-block; background: #0f5fa8; color: #ffffff; padding: 10px 22px; border-radius: 4px; text-decoration: none; }}
        .note {{ font-size: 12px; color: #66737f; border-top: 1px solid #e1e5ea; padding-top: 16px; margin-top: 32px; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>{title}</h2>
        <p>Hello {name},</p>
        <p>{intro}</p>
        <p><a href="{url}" class="action">{button}</a></p>
        <p>{expiry}</p>
        <p>{ignore}</p>
        <div class="note">
            <p>{sender}</p>
            <p>Link not working? Open this address in your browser: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{title}

Hello {name},

{intro}

{url}

{expiry}

{ignore}

---
{sender}
"""


class EmailService:
    """Sends verification and password-reset mail over SMTP.

    When SMTP is not configured the message is logged instead of sent,
    which keeps development and test setups working without a relay.
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
        from_name: str = "Portal",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

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
            verification_ttl_hours=settings.verification_token_ttl_hours,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

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
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(e.recipients),
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
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, *, title: str, name: str, intro: str, url: str, button: str, expiry: str, ignore: str) -> tuple[str, str]:
        values = {
            "title": title,
            "name": name or "there",
            "intro": intro,
            "url": url,
            "button": button,
            "expiry": expiry,
            "ignore": ignore,
            "sender": self.from_name,
        }
        html_body = _HTML_TEMPLATE.format(
            **{k: html.escape(v, quote=True) for k, v in values.items()}
        )
        return html_body, _TEXT_TEMPLATE.format(**values)

    def send_email_verification(self, to_email: str, first_name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            title="Verify your email",
            name=first_name,
            intro="Your portal registration is almost complete. Confirm your email address to activate your account.",
            url=verify_url,
            button="Verify Email",
            expiry=f"This link will expire in {self.verification_ttl_hours} hours.",
            ignore="If you didn't register, you can safely ignore this email.",
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(self, to_email: str, first_name: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            title="Reset your password",
            name=first_name,
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            url=reset_url,
            button="Reset Password",
            expiry=f"This link will expire in {self.reset_ttl_minutes} minutes.",
            ignore="If you didn't request this, you can ignore this email. Your password will not change.",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)
