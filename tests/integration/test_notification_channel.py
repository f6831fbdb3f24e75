import httpx
import pytest

from app.models.domain.job_domain import ChannelType
from app.services.errors import TransientChannelError
from app.services.notification_channel import (
    LoggingNotificationChannel,
    WebhookNotificationChannel,
    build_channels,
    contact_for,
)

WEBHOOK_URL = "https://notify.test/sms"


@pytest.mark.asyncio
async def test_webhook_posts_job_payload(httpx_mock):
    httpx_mock.add_response(method="POST", url=WEBHOOK_URL, status_code=202)
    channel = WebhookNotificationChannel(WEBHOOK_URL, ChannelType.SMS)

    delivered = await channel.send("+15550100", "urgent-donor-alert", {"requestId": "req-1"})
    await channel.close()

    assert delivered is True
    request = httpx_mock.get_request()
    assert request.headers["content-type"] == "application/json"
    assert b'"templateId":"urgent-donor-alert"' in request.content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_webhook_error_status_is_transient(httpx_mock):
    httpx_mock.add_response(method="POST", url=WEBHOOK_URL, status_code=500)
    channel = WebhookNotificationChannel(WEBHOOK_URL, ChannelType.SMS)

    with pytest.raises(TransientChannelError):
        await channel.send("+15550100", "urgent-donor-alert", {})
    await channel.close()


@pytest.mark.asyncio
async def test_webhook_network_error_is_transient(httpx_mock):
    httpx_mock.add_exception(httpx.ReadTimeout("slow provider"), url=WEBHOOK_URL)
    channel = WebhookNotificationChannel(WEBHOOK_URL, ChannelType.SMS)

    with pytest.raises(TransientChannelError):
        await channel.send("+15550100", "urgent-donor-alert", {})
    await channel.close()


@pytest.mark.asyncio
async def test_logging_channel_always_succeeds():
    channel = LoggingNotificationChannel(ChannelType.EMAIL)

    assert await channel.send("donor@example.com", "offer-accepted", {}) is True


def test_build_channels_uses_webhook_only_when_configured(monkeypatch):
    monkeypatch.setattr("app.services.notification_channel.settings.EMAIL_WEBHOOK_URL", None)
    monkeypatch.setattr(
        "app.services.notification_channel.settings.SMS_WEBHOOK_URL", WEBHOOK_URL
    )

    channels = build_channels()

    assert isinstance(channels[ChannelType.EMAIL], LoggingNotificationChannel)
    assert isinstance(channels[ChannelType.SMS], WebhookNotificationChannel)


def test_contact_preference(make_donor):
    assert contact_for(make_donor("d1", "O+")) == (ChannelType.EMAIL, "d1@example.com")
    assert contact_for(make_donor("d2", "O+", phone="+1555", prefers_sms=True)) == (
        ChannelType.SMS,
        "+1555",
    )
    assert contact_for(make_donor("d3", "O+", email=None, phone="+1666")) == (
        ChannelType.SMS,
        "+1666",
    )
    assert contact_for(make_donor("d4", "O+", email=None)) is None
