from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from keyward.logging import get_logger, mask_email

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .otp { font-size: 32px; font-weight: 700; letter-spacing: 8px; background: #f0f4f8; padding: 16px 24px; border-radius: 8px; display: inline-block; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailDispatcher(Protocol):
    """Outbound mail collaborator; every send returns whether delivery succeeded."""

    def send_verification_otp(
        self, to_email: str, name: str, otp: str, ttl_minutes: int
    ) -> bool: ...

    def send_password_reset_otp(
        self, to_email: str, name: str, otp: str, ttl_minutes: int
    ) -> bool: ...

    def send_two_factor_enabled(self, to_email: str, name: str) -> bool: ...


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Email verification and password reset one-time codes
    - Two-factor enablement notice
    - Logging instead of sending when SMTP is not configured (dev mode)
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
        from_name: str = "Keyward",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

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
                to=mask_email(to_email),
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
                to=mask_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(to_email), error=str(e))
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
            # connection refused, DNS failure and timeouts all land here
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _otp_bodies(
        self, heading: str, intro: str, name: str, otp: str, ttl_minutes: int, outro: str
    ) -> tuple[str, str]:
        greeting = f"Hi {name}," if name else "Hi,"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{greeting}</p>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><span class="otp">{otp}</span></p>
        <p>This code will expire in {ttl_minutes} minutes.</p>
        <p>{outro}</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{greeting}

{intro}

    {otp}

This code will expire in {ttl_minutes} minutes.

{outro}

---
{self.from_name}
"""
        return html_body, text_body

    def send_verification_otp(
        self, to_email: str, name: str, otp: str, ttl_minutes: int
    ) -> bool:
        html_body, text_body = self._otp_bodies(
            "Verify your email address",
            "Thanks for signing up! Enter the code below to verify your email address:",
            name,
            otp,
            ttl_minutes,
            "If you didn't create an account, you can safely ignore this email.",
        )
        return self._send_email(to_email, "Verify Your Email Address", html_body, text_body)

    def send_password_reset_otp(
        self, to_email: str, name: str, otp: str, ttl_minutes: int
    ) -> bool:
        html_body, text_body = self._otp_bodies(
            "Reset your password",
            "We received a request to reset your password. Enter the code below to continue:",
            name,
            otp,
            ttl_minutes,
            "If you didn't request this, you can safely ignore this email.",
        )
        return self._send_email(to_email, "Password Reset Request", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str, name: str) -> bool:
        subject = "Two-factor authentication enabled"
        greeting = f"Hi {name}," if name else "Hi,"
        text_body = f"""{subject}

{greeting}

Two-factor authentication has been enabled on your {self.from_name} account.
You will now need a code from your authenticator app when signing in.

If you didn't make this change, please contact support immediately.
"""
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><style>{_STYLE}</style></head>
<body>
    <div class="container">
        <h1>{subject}</h1>
        <p>{greeting}</p>
        <p>Two-factor authentication has been enabled on your {self.from_name} account.</p>
        <p>You will now need a code from your authenticator app when signing in.</p>
        <p>If you didn't make this change, please contact support immediately.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        return self._send_email(to_email, subject, html_body, text_body)
