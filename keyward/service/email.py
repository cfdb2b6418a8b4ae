from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from keyward.logging import get_logger

logger = get_logger(__name__)


def redact_email(email: str) -> str:
    """Redact an address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Sends verification codes over SMTP.

    Supports STARTTLS (``smtp_use_tls``) or implicit SSL. When no SMTP host or
    sender address is configured the message is logged instead of sent, which
    keeps local development and tests free of a mail server.
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
        code_ttl_minutes: int = 5,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Send one message. Returns True if the server accepted it."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = self._build_message(to_email, subject, text_body, html_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", host=self.smtp_host, port=self.smtp_port, error=str(e))
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification_code(self, to_email: str, code: str) -> bool:
        subject = "Your Keyward verification code"
        text_body = (
            f"Your verification code is {code}\n\n"
            f"It expires in {self.code_ttl_minutes} minutes. "
            "If you did not request it, ignore this message.\n"
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #1f2933;">
    <p>Your verification code is</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600;">{code}</p>
    <p>It expires in {self.code_ttl_minutes} minutes. If you did not request it, ignore this message.</p>
</body>
</html>
"""
        return self._send_email(to_email, subject, text_body, html_body)
