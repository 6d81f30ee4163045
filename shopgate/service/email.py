from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional
from urllib.parse import urlencode

from shopgate.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email for one-time codes and account security notices.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "Shopgate",
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

    def _layout(self, heading: str, paragraphs: list[str]) -> str:
        body = "\n".join(f"        <p>{p}</p>" for p in paragraphs)
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{escape(heading)}</h1>
{body}
        <div class="footer"><p>{escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""

    def send_verification_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        """Send the one-time code that confirms a new account's email."""
        subject = f"Verify your {self.from_name} email"
        html_body = self._layout(
            "Verify your email",
            [
                "Use the code below to verify your email address:",
                f'<span class="code">{escape(code)}</span>',
                f"This code expires in {ttl_minutes} minutes.",
            ],
        )
        text_body = (
            f"Your verification code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = f"Reset your {self.from_name} password"
        html_body = self._layout(
            "Password reset",
            [
                "Use the code below to reset your password:",
                f'<span class="code">{escape(code)}</span>',
                f"This code expires in {ttl_minutes} minutes.",
                "If you did not ask for a reset, you can ignore this email.",
            ],
        )
        text_body = (
            f"Your password reset code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes.\n"
            "If you did not ask for a reset, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = "Your sign-in verification code"
        html_body = self._layout(
            "Two-factor verification",
            [
                "Enter this code to continue:",
                f'<span class="code">{escape(code)}</span>',
                f"This code expires in {ttl_minutes} minutes.",
                "If you did not try to sign in, change your password.",
            ],
        )
        text_body = (
            f"Your verification code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes.\n"
            "If you did not try to sign in, change your password.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def two_factor_disable_url(self, user_id: str, token: str) -> str:
        query = urlencode({"user_id": user_id, "token": token})
        return f"{self.base_url}/v1/auth/2fa/disable-confirm?{query}"

    def send_two_factor_disable_link(
        self, to_email: str, user_id: str, token: str, ttl_minutes: int
    ) -> bool:
        url = self.two_factor_disable_url(user_id, token)
        subject = "Confirm disabling two-factor authentication"
        html_body = self._layout(
            "Disable two-factor authentication",
            [
                "We received a request to turn off two-factor authentication on your account.",
                f'<a href="{escape(url)}">Confirm and disable 2FA</a>',
                f"This link expires in {ttl_minutes} minutes.",
                "If you didn't request this, ignore this email and your settings stay unchanged.",
            ],
        )
        text_body = (
            "Confirm disabling two-factor authentication:\n\n"
            f"{url}\n\n"
            f"This link expires in {ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str, method: str) -> bool:
        """Send confirmation that 2FA was enabled."""
        subject = "Two-factor authentication enabled"
        how = "your authenticator app" if method == "app" else "a code sent to your email"
        html_body = self._layout(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication has been enabled on your account.",
                f"You will now need {how} when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        text_body = (
            "Two-factor authentication has been enabled on your account.\n"
            f"You will now need {how} when signing in.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_account_status(
        self,
        to_email: str,
        status: str,
        *,
        reason: Optional[str] = None,
        duration_days: Optional[int] = None,
    ) -> bool:
        subject = f"Your {self.from_name} account status changed"
        lines = [f"Your account status is now: {escape(status)}."]
        if reason:
            lines.append(f"Reason: {escape(reason)}")
        if duration_days:
            lines.append(f"This applies for {duration_days} days.")
        html_body = self._layout("Account status update", lines)
        text_body = "\n".join(
            [f"Your account status is now: {status}."]
            + ([f"Reason: {reason}"] if reason else [])
            + ([f"This applies for {duration_days} days."] if duration_days else [])
        )
        return self._send_email(to_email, subject, html_body, text_body)
