from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from identitykit.logging import get_logger, redact_address

logger = get_logger(__name__)

_RESET_SUBJECT = "Reset Your Password"

_RESET_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.5; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h1>Reset Your Password</h1>
    <p>A password reset was requested for {account}.</p>
    <p><a href="{url}" style="background: #2563eb; color: #fff; padding: 10px 20px;
       border-radius: 6px; text-decoration: none;">Choose a new password</a></p>
    <p>This link expires in {minutes} minutes. Requesting another link cancels this one.</p>
    <p style="font-size: 12px; color: #5b6470;">Ignore this mail if the request was not yours.
       Link: {url}</p>
    <p style="font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""

_RESET_TEXT = """Reset Your Password

A password reset was requested for {account}.

Choose a new password here:
{url}

This link expires in {minutes} minutes. Requesting another link cancels this one.
Ignore this mail if the request was not yours.

{sender}
"""

# Checked in order; subclasses must come before their bases
_FAILURE_EVENTS = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_connect_failed"),
)


class EmailService:
    """Sends password reset links over SMTP.

    With no SMTP host configured the service runs in dev mode: nothing is
    sent, the reset link is logged in full under ``link`` and the send is
    reported as delivered, so local setups can finish the reset flow from the
    log.
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
        from_name: str = "IdentityKit",
        base_url: Optional[str] = None,
        reset_ttl_seconds: int = 1800,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8080").rstrip("/")
        self.reset_ttl_seconds = reset_ttl_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={token}"

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Mail the reset link for ``token`` to ``to_email``.

        Returns False when the SMTP exchange fails; the caller decides how to
        report that.
        """
        fields = {
            "account": to_email,
            "url": self.reset_link(token),
            "minutes": max(1, self.reset_ttl_seconds // 60),
            "sender": self.from_name,
        }
        return self._send(
            to_email,
            _RESET_SUBJECT,
            _RESET_HTML.format(**fields),
            _RESET_TEXT.format(**fields),
            link=fields["url"],
        )

    def _compose(self, to_email: str, subject: str, html: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))
        return msg

    def _open(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)

    def _send(
        self, to_email: str, subject: str, html: str, text: str, *, link: Optional[str] = None
    ) -> bool:
        recipient = redact_address(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject, link=link)
            return True

        context = ssl.create_default_context()
        payload = self._compose(to_email, subject, html, text).as_string()
        try:
            with self._open(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, payload)
        except OSError as exc:
            # smtplib and ssl errors are all OSError subclasses
            event = next(name for kind, name in _FAILURE_EVENTS if isinstance(exc, kind))
            logger.error(
                event,
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True
