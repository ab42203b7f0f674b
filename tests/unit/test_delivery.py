"""
Unit tests for app/services/delivery.py

The SMS gateway is replaced by an httpx MockTransport and SMTP by a fake
server class; nothing leaves the process.
"""

import smtplib

import httpx
import pytest

from app.models.otp import OTPChannel
from app.services import delivery as delivery_module
from app.services.delivery import (
    ConsoleDelivery,
    DeliveryError,
    EmailSender,
    ProviderDelivery,
    build_delivery,
    SMSSender,
)


@pytest.fixture
def gateway(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport and record requests."""
    requests = []
    state = {"status": 200}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(state["status"], json={"ok": state["status"] < 400})

    monkeypatch.setattr(
        delivery_module.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    return requests, state


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, server, port, timeout=None):
        self.server = server
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        if FakeSMTP.fail:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def sendmail(self, from_addr, to_addr, body):
        FakeSMTP.sent.append((from_addr, to_addr, body))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail = False
    monkeypatch.setattr(delivery_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.mark.asyncio
class TestSMSSender:

    async def test_posts_json_with_bearer_token(self, gateway):
        requests, _ = gateway
        sender = SMSSender("https://sms.example.test/send", "tok", sender="MSLS")

        await sender.send_message("+15555550123", "Your code is 123456")

        assert len(requests) == 1
        assert requests[0].headers["Authorization"] == "Bearer tok"
        assert b'"to":"+15555550123"' in requests[0].content.replace(b" ", b"")

    async def test_gateway_error_becomes_delivery_error(self, gateway):
        _, state = gateway
        state["status"] = 503
        sender = SMSSender("https://sms.example.test/send", "tok")

        with pytest.raises(DeliveryError) as exc:
            await sender.send_message("+15555550123", "Your code is 123456")

        assert exc.value.channel == OTPChannel.SMS


@pytest.mark.asyncio
class TestEmailSender:

    async def test_sends_html_message(self, smtp):
        sender = EmailSender("smtp.example.test", 587, "noreply@school.edu", "secret")

        await sender.send_message("jane@school.edu", "Your code is 123456")

        from_addr, to_addr, body = smtp.sent[0]
        assert from_addr == "noreply@school.edu"
        assert to_addr == "jane@school.edu"
        assert "text/html" in body

    async def test_missing_credentials(self, smtp):
        sender = EmailSender("smtp.example.test", 587, None, None)

        with pytest.raises(DeliveryError) as exc:
            await sender.send_message("jane@school.edu", "Your code is 123456")

        assert exc.value.channel == OTPChannel.EMAIL
        assert smtp.sent == []

    async def test_smtp_failure_becomes_delivery_error(self, smtp):
        smtp.fail = True
        sender = EmailSender("smtp.example.test", 587, "noreply@school.edu", "wrong")

        with pytest.raises(DeliveryError):
            await sender.send_message("jane@school.edu", "Your code is 123456")


@pytest.mark.asyncio
class TestRouting:

    async def test_provider_routes_by_channel(self, gateway, smtp):
        requests, _ = gateway
        routed = ProviderDelivery(
            SMSSender("https://sms.example.test/send", None),
            EmailSender("smtp.example.test", 587, "noreply@school.edu", "secret"),
        )

        await routed.send(OTPChannel.SMS, "+15555550123", "code 123456")
        await routed.send(OTPChannel.EMAIL, "jane@school.edu", "code 123456")

        assert len(requests) == 1
        assert len(smtp.sent) == 1

    async def test_sms_without_gateway(self, smtp):
        routed = ProviderDelivery(None, EmailSender("smtp.example.test", 587, "u", "p"))

        with pytest.raises(DeliveryError):
            await routed.send(OTPChannel.SMS, "+15555550123", "code 123456")

    async def test_console_delivery_prints(self, capsys):
        await ConsoleDelivery().send(OTPChannel.EMAIL, "jane@school.edu", "code 123456")

        assert "code 123456" in capsys.readouterr().out

    async def test_build_delivery_selects_backend(self, monkeypatch):
        assert isinstance(build_delivery(), ConsoleDelivery)

        monkeypatch.setattr(delivery_module.settings, "DELIVERY_BACKEND", "provider")
        monkeypatch.setattr(delivery_module.settings, "SMS_API_URL", None)
        routed = build_delivery()

        assert isinstance(routed, ProviderDelivery)
        assert routed.sms is None
