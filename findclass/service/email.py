from __future__ import annotations

import smtplib
import ssl
from collections import deque
from email.message import EmailMessage
from typing import Any, Dict, Optional

from findclass.logging import get_logger, mask_email

logger = get_logger(__name__)

# code type -> (subject, what the code lets the reader do)
_CODE_COPY = {
    "REGISTER": ("Verify your FindClass email", "finish creating your account"),
    "LOGIN": ("Your FindClass sign-in code", "sign in to your account"),
    "FORGOT_PASSWORD": ("Reset your FindClass password", "reset your password"),
}

_CODE_TEXT = """Kia ora,

Enter this code to {purpose}:

    {code}

It expires in {minutes} minutes and works once. If you did not ask for it,
nothing has changed on your account and you can ignore this message.

FindClass NZ
{base_url}
"""

_CODE_HTML = """<html>
  <body style="font-family: sans-serif; color: #1f2933; max-width: 560px; margin: 0 auto;">
    <p>Kia ora,</p>
    <p>Enter this code to {purpose}:</p>
    <p style="font-size: 30px; font-weight: 700; letter-spacing: 6px; color: #0f766e;">{code}</p>
    <p>It expires in {minutes} minutes and works once. If you did not ask for it,
       nothing has changed on your account and you can ignore this message.</p>
    <p style="font-size: 12px; color: #5b6470;">FindClass NZ &middot; <a href="{base_url}">{base_url}</a></p>
  </body>
</html>
"""


class EmailService:
    """Sends verification codes over SMTP.

    Without ``smtp_host`` and a sender address nothing leaves the process:
    messages land in ``outbox`` (newest last) so local runs and tests can read
    the code back.
    """

    SMTP_TIMEOUT = 30

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "FindClass NZ",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self.outbox: deque = deque(maxlen=100)

    @classmethod
    def from_settings(cls, settings: Any) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.from_email,
            from_name=settings.from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, text: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        return message

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.SMTP_TIMEOUT)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.SMTP_TIMEOUT
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _deliver(self, to_email: str, subject: str, text: str, html: str) -> bool:
        """Send one message; ``False`` when SMTP refuses or cannot be reached."""
        recipient = mask_email(to_email)
        if not self.is_configured:
            self.outbox.append({"to": to_email, "subject": subject, "text": text})
            logger.info("email_captured", to=recipient, subject=subject)
            return True
        message = self._compose(to_email, subject, text, html)
        try:
            with self._open() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_verification_code(
        self, to_email: str, code: str, code_type: str, *, ttl_seconds: int = 300
    ) -> bool:
        subject, purpose = _CODE_COPY.get(code_type, _CODE_COPY["REGISTER"])
        values: Dict[str, Any] = {
            "purpose": purpose,
            "code": code,
            "minutes": max(1, ttl_seconds // 60),
            "base_url": self.base_url,
        }
        return self._deliver(
            to_email, subject, _CODE_TEXT.format(**values), _CODE_HTML.format(**values)
        )


__all__ = ["EmailService"]
