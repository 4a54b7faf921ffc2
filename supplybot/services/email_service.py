"""Transactional mail — supplier emails over SMTP.

Purpose:
  Deliver negotiation, counter-offer, acceptance, quote and expedite
  emails to supplier contacts.

Business Rules:
  - smtplib is blocking; every send runs in a worker thread
  - Any SMTP/network failure raises MailDeliveryError (retryable) so the
    caller can roll back the step that produced the email
  - Missing recipient is a caller bug, not a transient failure → ValueError

Called by: agents/diplomat.py
Depends on: config.py (smtp_*, email_from*)
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from ..config import settings
from ..errors import MailDeliveryError

log = logging.getLogger(__name__)


class MailTransport:
    """SMTP sender; STARTTLS + login only when credentials are configured."""

    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int | None = None,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
        timeout: int | None = None,
    ):
        self.smtp_host = smtp_host or settings.smtp_host
        self.smtp_port = smtp_port or settings.smtp_port
        self.smtp_user = settings.smtp_user if smtp_user is None else smtp_user
        self.smtp_password = settings.smtp_password if smtp_password is None else smtp_password
        self.from_email = from_email or settings.email_from
        self.from_name = from_name or settings.email_from_name
        self.timeout = timeout or settings.smtp_timeout_seconds

    def _build(self, to_email: str, subject: str, body: str, html: str | None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = make_msgid(domain=self.from_email.split("@")[-1])
        msg.attach(MIMEText(body, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def _send_sync(self, msg: MIMEMultipart, to_email: str) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.smtp_user and self.smtp_password:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [to_email], msg.as_string())

    async def send(self, to_email: str, subject: str, body: str, *, html: str | None = None) -> str:
        """Send one email. Returns the Message-ID."""
        if not to_email:
            raise ValueError("Recipient address is required")

        msg = self._build(to_email, subject, body, html)
        try:
            await asyncio.to_thread(self._send_sync, msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            log.error("SMTP authentication failed. Check SMTP credentials.")
            raise MailDeliveryError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPException as e:
            log.error(f"SMTP error sending to {to_email}: {e}")
            raise MailDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            log.error(f"Network error sending to {to_email}: {e}")
            raise MailDeliveryError(f"Mail transport unavailable: {e}") from e

        log.info(f"Email sent to {to_email}: {subject}")
        return msg["Message-ID"]
