"""Channel senders (email, SMS, team chat, applicant link delivery)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from paystub.core.config import settings
from paystub.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    subject: str
    body: str
    priority: str = "normal"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: str | None = None


class ChannelSender(Protocol):
    async def send(self, address: str, message: NotificationMessage) -> DeliveryResult: ...


class LogChannelSender:
    """Development sender: writes the message to the structured log."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    async def send(self, address: str, message: NotificationMessage) -> DeliveryResult:
        logger.info(
            "Notification delivered to log",
            channel=self.channel,
            address=address,
            subject=message.subject,
            priority=message.priority,
        )
        return DeliveryResult(ok=True)


class WebhookChannelSender:
    """POSTs the message as JSON to a delivery gateway."""

    def __init__(
        self,
        url: str,
        channel: str,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.channel = channel
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SEC
        self._client = client

    async def send(self, address: str, message: NotificationMessage) -> DeliveryResult:
        payload = {
            "channel": self.channel,
            "address": address,
            "subject": message.subject,
            "body": message.body,
            "priority": message.priority,
            "metadata": message.metadata,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Notification webhook unreachable", channel=self.channel, error=str(exc))
            return DeliveryResult(ok=False, error=f"{self.channel} delivery failed: {exc}")

        if not response.is_success:
            logger.warning(
                "Notification webhook rejected message",
                channel=self.channel,
                status_code=response.status_code,
            )
            return DeliveryResult(
                ok=False,
                error=f"{self.channel} delivery failed: HTTP {response.status_code}",
            )
        return DeliveryResult(ok=True)


@dataclass
class ChannelSenders:
    """Senders per channel; team_chat is optional."""

    email: ChannelSender
    sms: ChannelSender
    applicant: ChannelSender
    team_chat: ChannelSender | None = None


def _sender_for(channel: str, url: str) -> ChannelSender:
    return WebhookChannelSender(url, channel) if url else LogChannelSender(channel)


def build_senders() -> ChannelSenders:
    """Webhook senders where a URL is configured, log senders otherwise."""
    return ChannelSenders(
        email=_sender_for("email", settings.EMAIL_WEBHOOK_URL),
        sms=_sender_for("sms", settings.SMS_WEBHOOK_URL),
        applicant=_sender_for("applicant", settings.APPLICANT_WEBHOOK_URL),
        team_chat=(
            WebhookChannelSender(settings.TEAM_CHAT_WEBHOOK_URL, "team_chat")
            if settings.TEAM_CHAT_WEBHOOK_URL
            else None
        ),
    )
