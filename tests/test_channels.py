"""
Tests for notification channels.
"""
import smtplib

import pytest

from services.notification.app import channels
from services.notification.app.channels import (
    ChannelError,
    ChannelRegistry,
    EmailChannel,
    NotificationChannel,
    OutboundMessage,
    SimulatedPushChannel,
    SimulatedSmsChannel,
)

MESSAGE = OutboundMessage(recipient="user42@example.com", subject="Hi", body="Hello")


class FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


class FakeSMTP:
    sent: list = []
    refuse = False

    def __init__(self, host, port, timeout=None) -> None:
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def send_message(self, message) -> None:
        if self.refuse:
            raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"no such user")})
        self.sent.append((self.host, self.port, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.refuse = False
    monkeypatch.setattr(channels.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


class TestEmailChannel:
    async def test_sends_through_smtp(self, fake_smtp) -> None:
        channel = EmailChannel("mail.internal", 2525, sender="shop@example.com")
        await channel.send(MESSAGE)

        [(host, port, email)] = fake_smtp.sent
        assert (host, port) == ("mail.internal", 2525)
        assert email["From"] == "shop@example.com"
        assert email["To"] == "user42@example.com"
        assert email["Subject"] == "Hi"
        assert email.get_content().strip() == "Hello"

    async def test_smtp_error_becomes_channel_error(self, fake_smtp) -> None:
        fake_smtp.refuse = True
        with pytest.raises(ChannelError, match="Email delivery failed"):
            await EmailChannel("mail.internal").send(MESSAGE)


class TestSimulatedChannels:
    async def test_sms_success_and_failure(self) -> None:
        await SimulatedSmsChannel(latency=0, rng=FixedRandom(0.5)).send(MESSAGE)
        with pytest.raises(ChannelError, match="SMS delivery failed"):
            await SimulatedSmsChannel(latency=0, rng=FixedRandom(0.9)).send(MESSAGE)

    async def test_push_success_and_failure(self) -> None:
        await SimulatedPushChannel(latency=0, rng=FixedRandom(0.94)).send(MESSAGE)
        with pytest.raises(ChannelError, match="Push notification delivery failed"):
            await SimulatedPushChannel(latency=0, rng=FixedRandom(0.95)).send(MESSAGE)


def test_registry_rejects_unconfigured_channel() -> None:
    registry = ChannelRegistry({NotificationChannel.SMS: SimulatedSmsChannel()})
    assert isinstance(registry.get(NotificationChannel.SMS), SimulatedSmsChannel)
    with pytest.raises(ChannelError, match="Unsupported notification channel: EMAIL"):
        registry.get(NotificationChannel.EMAIL)
