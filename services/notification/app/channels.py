"""
Notification Service — 送信チャネル

  EMAIL : SMTP で送信（smtplib はブロッキングなのでワーカースレッドで実行）
  SMS   : 外部プロバイダ未接続のため模擬（約 0.5 秒・成功率 90%）
  PUSH  : 同上（約 0.2 秒・成功率 95%）

チャネルは送信できなかった場合に ChannelError を送出する。
"""

import asyncio
import random
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from enum import Enum


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"


class ChannelError(Exception):
    """チャネルが配信に失敗した"""


@dataclass(frozen=True)
class OutboundMessage:
    recipient: str
    subject: str
    body: str


class ChannelAdapter(ABC):
    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        ...


class EmailChannel(ChannelAdapter):
    def __init__(self, host: str, port: int = 25, sender: str = "noreply@example.com",
                 timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.timeout = timeout

    def _send_sync(self, message: OutboundMessage) -> None:
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = message.recipient
        email["Subject"] = message.subject
        email.set_content(message.body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.send_message(email)

    async def send(self, message: OutboundMessage) -> None:
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelError(f"Email delivery failed: {e}") from e


class _SimulatedChannel(ChannelAdapter):
    name = "channel"

    def __init__(self, success_rate: float, latency: float,
                 rng: random.Random | None = None) -> None:
        self.success_rate = success_rate
        self.latency = latency
        self.rng = rng or random.Random()

    async def send(self, message: OutboundMessage) -> None:
        await asyncio.sleep(self.latency)
        if self.rng.random() >= self.success_rate:
            raise ChannelError(f"{self.name} delivery failed")


class SimulatedSmsChannel(_SimulatedChannel):
    name = "SMS"

    def __init__(self, success_rate: float = 0.9, latency: float = 0.5,
                 rng: random.Random | None = None) -> None:
        super().__init__(success_rate, latency, rng)


class SimulatedPushChannel(_SimulatedChannel):
    name = "Push notification"

    def __init__(self, success_rate: float = 0.95, latency: float = 0.2,
                 rng: random.Random | None = None) -> None:
        super().__init__(success_rate, latency, rng)


class ChannelRegistry:
    """チャネル種別 → アダプタ"""

    def __init__(self, adapters: dict[NotificationChannel, ChannelAdapter]) -> None:
        self._adapters = dict(adapters)

    def get(self, channel: NotificationChannel) -> ChannelAdapter:
        try:
            return self._adapters[channel]
        except KeyError:
            raise ChannelError(f"Unsupported notification channel: {channel.value}") from None
