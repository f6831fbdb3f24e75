"""
Notification channel adapters.

A channel accepts (recipient, template_id, data) and reports success. The
dispatch pipeline calls exactly one channel per job attempt and treats a
False result or any exception as a failed attempt.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.blood_domain import Donor
from app.models.domain.job_domain import ChannelType
from app.services.errors import TransientChannelError

logger = get_logger(__name__)


class NotificationChannel(ABC):
    """Outbound delivery for one channel type."""

    @abstractmethod
    async def send(self, recipient: str, template_id: str, data: dict[str, Any]) -> bool: ...

    async def close(self) -> None:
        return None


class WebhookNotificationChannel(NotificationChannel):
    """Posts rendered-by-provider notifications to a delivery webhook."""

    def __init__(
        self,
        url: str,
        channel_type: ChannelType,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.channel_type = channel_type
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.NOTIFICATION_TIMEOUT_SECONDS)
        )

    async def send(self, recipient: str, template_id: str, data: dict[str, Any]) -> bool:
        payload = {
            "channel": self.channel_type.value,
            "recipient": recipient,
            "templateId": template_id,
            "data": data,
        }
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise TransientChannelError(
                f"{self.channel_type.value} delivery failed: {e}", operation="send"
            ) from e

        if not response.is_success:
            raise TransientChannelError(
                f"{self.channel_type.value} provider returned HTTP {response.status_code}",
                operation="send",
            )

        logger.debug(
            "Notification delivered",
            channel=self.channel_type.value,
            template_id=template_id,
            status_code=response.status_code,
        )
        return True

    async def close(self) -> None:
        await self._client.aclose()


class LoggingNotificationChannel(NotificationChannel):
    """Development channel: logs the notification instead of delivering it."""

    def __init__(self, channel_type: ChannelType):
        self.channel_type = channel_type

    async def send(self, recipient: str, template_id: str, data: dict[str, Any]) -> bool:
        logger.info(
            "Notification (not delivered, no provider configured)",
            channel=self.channel_type.value,
            recipient=recipient,
            template_id=template_id,
        )
        return True


def build_channels() -> dict[ChannelType, NotificationChannel]:
    """Webhook channels where a provider URL is configured, logging otherwise."""
    channels: dict[ChannelType, NotificationChannel] = {}
    for channel_type, url in (
        (ChannelType.EMAIL, settings.EMAIL_WEBHOOK_URL),
        (ChannelType.SMS, settings.SMS_WEBHOOK_URL),
    ):
        if url:
            channels[channel_type] = WebhookNotificationChannel(url, channel_type)
        else:
            channels[channel_type] = LoggingNotificationChannel(channel_type)
    return channels


def contact_for(donor: Donor) -> tuple[ChannelType, str] | None:
    """Channel and address to reach a donor; SMS only when preferred or the sole option."""
    if donor.prefers_sms and donor.phone:
        return ChannelType.SMS, donor.phone
    if donor.email:
        return ChannelType.EMAIL, donor.email
    if donor.phone:
        return ChannelType.SMS, donor.phone
    return None
