"""
test_email_service.py — SMTP mail transport.

smtplib.SMTP is patched; nothing leaves the process.

Called by: pytest
Depends on: supplybot/services/email_service.py
"""

import smtplib
from email import message_from_string
from unittest.mock import MagicMock, patch

import pytest

from supplybot.errors import MailDeliveryError, TransientError
from supplybot.services.email_service import MailTransport


@pytest.fixture()
def smtp():
    with patch("supplybot.services.email_service.smtplib.SMTP") as cls:
        server = MagicMock()
        cls.return_value.__enter__.return_value = server
        yield cls, server


def _transport(**kw) -> MailTransport:
    defaults = dict(
        smtp_host="mail.example",
        smtp_port=587,
        smtp_user="",
        smtp_password="",
        from_email="buyer@acme.example",
        from_name="Acme Purchasing",
    )
    defaults.update(kw)
    return MailTransport(**defaults)


@pytest.mark.asyncio
async def test_send_returns_message_id(smtp):
    cls, server = smtp

    message_id = await _transport().send("sales@steelsupply.example", "Pricing discussion", "Hello")

    cls.assert_called_once_with("mail.example", 587, timeout=30)
    server.starttls.assert_not_called()
    from_addr, to_addrs, raw = server.sendmail.call_args.args
    assert (from_addr, to_addrs) == ("buyer@acme.example", ["sales@steelsupply.example"])
    msg = message_from_string(raw)
    assert msg["Subject"] == "Pricing discussion"
    assert msg["From"] == "Acme Purchasing <buyer@acme.example>"
    assert msg["Message-ID"] == message_id
    assert message_id.endswith("@acme.example>")


@pytest.mark.asyncio
async def test_send_with_credentials_uses_starttls(smtp):
    _, server = smtp

    await _transport(smtp_user="buyer", smtp_password="pw").send("a@b.example", "s", "b")

    server.starttls.assert_called_once()
    server.login.assert_called_once_with("buyer", "pw")


@pytest.mark.asyncio
async def test_html_alternative_attached(smtp):
    _, server = smtp

    await _transport().send("a@b.example", "s", "plain body", html="<p>html body</p>")

    msg = message_from_string(server.sendmail.call_args.args[2])
    assert [p.get_content_type() for p in msg.get_payload()] == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_smtp_error_is_retryable(smtp):
    _, server = smtp
    server.sendmail.side_effect = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")

    with pytest.raises(MailDeliveryError, match="SMTP error") as exc:
        await _transport().send("a@b.example", "s", "b")
    assert isinstance(exc.value, TransientError)


@pytest.mark.asyncio
async def test_auth_error(smtp):
    _, server = smtp
    server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

    with pytest.raises(MailDeliveryError, match="authentication failed"):
        await _transport(smtp_user="buyer", smtp_password="wrong").send("a@b.example", "s", "b")


@pytest.mark.asyncio
async def test_network_error(smtp):
    cls, _ = smtp
    cls.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(MailDeliveryError, match="Mail transport unavailable"):
        await _transport().send("a@b.example", "s", "b")


@pytest.mark.asyncio
async def test_missing_recipient(smtp):
    cls, _ = smtp
    with pytest.raises(ValueError, match="Recipient"):
        await _transport().send("", "s", "b")
    cls.assert_not_called()
