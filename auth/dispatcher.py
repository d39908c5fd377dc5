"""
auth/dispatcher.py -- Out-of-band delivery of two-factor codes.

The challenge engine only knows the CodeDispatcher contract:

    await dispatcher.send_code(address, code, display_name) -> bool

EmailCodeDispatcher delivers over SMTP. smtplib is blocking, so the send runs
in a worker thread (asyncio.to_thread) and never stalls the event loop.

Returning False (or raising) tells the engine delivery failed; the engine
then rolls the challenge back. A dispatcher must never log the plaintext
code outside of dev mode.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

logger = logging.getLogger("techpacker.auth.dispatcher")


class CodeDispatcher(Protocol):
    async def send_code(self, address: str, code: str, display_name: str) -> bool: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailCodeDispatcher:
    """Send verification codes by email.

    When SMTP is not configured and debug is on, the message is logged instead
    of sent (dev mode). Unconfigured SMTP outside debug is a delivery failure.
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "TechPacker",
        debug: bool = False,
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.debug = debug
        self.code_ttl_minutes = code_ttl_minutes

    @classmethod
    def from_settings(cls, settings) -> "EmailCodeDispatcher":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
            debug=settings.debug,
            code_ttl_minutes=max(1, settings.two_factor_code_ttl_seconds // 60),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send_code(self, address: str, code: str, display_name: str) -> bool:
        subject = "Your TechPacker verification code"
        text_body = (
            f"Hello {display_name or address},\n\n"
            f"Your verification code is: {code}\n\n"
            f"The code expires in {self.code_ttl_minutes} minutes. "
            "If you did not try to sign in, change your password.\n"
        )
        html_body = (
            f"<p>Hello {display_name or address},</p>"
            f"<p>Your verification code is: <strong>{code}</strong></p>"
            f"<p>The code expires in {self.code_ttl_minutes} minutes. "
            "If you did not try to sign in, change your password.</p>"
        )
        if not self.is_configured:
            if self.debug:
                logger.info("Dev mode: verification code for %s is %s", _redact_email(address), code)
                return True
            logger.error("SMTP is not configured; cannot deliver verification code")
            return False
        return await asyncio.to_thread(self._send, address, subject, html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
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
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Verification email to %s failed: %s", _redact_email(to_email), exc)
            return False
        logger.info("Verification email sent to %s", _redact_email(to_email))
        return True
