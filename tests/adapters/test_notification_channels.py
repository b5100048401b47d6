"""
Tests for the webhook, chat and in-app channels.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pipewatch.adapters.channels.chat import ChatChannel, format_message
from pipewatch.adapters.channels.inapp import InAppChannel
from pipewatch.adapters.channels.kafka import KafkaPublisher
from pipewatch.adapters.channels.webhook import SIGNATURE_HEADER, WebhookChannel, sign
from pipewatch.core.domain.alert import ChannelConfig
from pipewatch.core.ports.notifier import AlertPayload

pytestmark = pytest.mark.unit


@pytest.fixture
def payload():
    return AlertPayload(
        alert_id="a1",
        configuration_id="cfg",
        type="sla",
        severity="critical",
        status="escalating",
        title="SLA Violation: success_rate",
        message="success_rate on api is 0.80 against a target of 0.95",
        metric="success_rate",
        trigger_value=0.8,
        threshold=0.95,
        pipeline_id="api",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        stage=2,
        notify_roles=["oncall"],
        notify_users=["dana"],
    )


def http_client(module, status_code=200):
    patcher = patch(f"pipewatch.adapters.channels.{module}.httpx.AsyncClient")
    MockClient = patcher.start()
    instance = MockClient.return_value
    instance.post = AsyncMock(return_value=MagicMock(status_code=status_code))
    instance.aclose = AsyncMock()
    return patcher, instance


@pytest.mark.asyncio
async def test_webhook_posts_signed_json(payload):
    patcher, client = http_client("webhook")
    try:
        channel = ChannelConfig(
            id="hook", type="webhook",
            config={"url": "http://hooks.local/ops", "secret": "s3cret", "headers": {"X-Team": "ci"}},
        )
        receipt = await WebhookChannel().send(channel, payload)
    finally:
        patcher.stop()

    assert receipt.delivered
    args, kwargs = client.post.await_args
    assert args[0] == "http://hooks.local/ops"
    body = kwargs["content"]
    assert json.loads(body)["alert_id"] == "a1"
    assert kwargs["headers"]["X-Team"] == "ci"
    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert kwargs["headers"][SIGNATURE_HEADER] == f"sha256={expected}"


@pytest.mark.asyncio
async def test_webhook_error_status_is_not_delivered(payload):
    patcher, _ = http_client("webhook", status_code=502)
    try:
        receipt = await WebhookChannel().send(ChannelConfig(id="hook", type="webhook", config={"url": "http://x"}), payload)
    finally:
        patcher.stop()

    assert not receipt.delivered
    assert "502" in receipt.error


@pytest.mark.asyncio
async def test_webhook_without_url(payload):
    receipt = await WebhookChannel().send(ChannelConfig(id="hook", type="webhook"), payload)
    assert not receipt.delivered


def test_sign_is_stable():
    assert sign(b"{}", "k") == sign(b"{}", "k")
    assert sign(b"{}", "k") != sign(b"{}", "other")


def test_chat_message_format(payload):
    text = format_message(payload)
    assert text.startswith(":fire: *[CRITICAL]* SLA Violation: success_rate")
    assert "_Escalation stage 2_" in text
    assert "<@dana>" in text
    assert "<!subteam^oncall>" in text


@pytest.mark.asyncio
async def test_chat_posts_to_webhook(payload):
    patcher, client = http_client("chat")
    try:
        channel = ChannelConfig(id="chat", type="chat", config={"webhook_url": "http://chat.local", "channel": "#ci"})
        chat = ChatChannel()
        receipt = await chat.send(channel, payload)
        await chat.close()
    finally:
        patcher.stop()

    assert receipt.delivered
    body = client.post.await_args.kwargs["json"]
    assert body["channel"] == "#ci"
    assert "SLA Violation" in body["text"]
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_inapp_fans_out_to_audiences(payload):
    channel = InAppChannel()
    receipt = await channel.send(ChannelConfig(id="inbox", type="inapp", config={"audience": "platform"}), payload)

    assert receipt.delivered
    assert channel.inbox("platform") == [payload]
    assert channel.inbox("user:dana") == [payload]
    assert channel.inbox("role:oncall") == [payload]
    assert channel.inbox("all") == []


@pytest.mark.asyncio
async def test_inapp_mirrors_to_kafka(payload):
    publisher = MagicMock(spec=KafkaPublisher)
    publisher.publish_message.return_value = True
    channel = InAppChannel(publisher=publisher, topic="alerts")

    receipt = await channel.send(ChannelConfig(id="inbox", type="inapp"), payload)

    assert receipt.delivered
    topic, message = publisher.publish_message.call_args.args
    assert topic == "alerts"
    assert message["audiences"] == ["all", "user:dana", "role:oncall"]
    assert publisher.publish_message.call_args.kwargs["key"] == "a1"


@pytest.mark.asyncio
async def test_inapp_reports_kafka_failure(payload):
    publisher = MagicMock(spec=KafkaPublisher)
    publisher.publish_message.return_value = False
    channel = InAppChannel(publisher=publisher)

    receipt = await channel.send(ChannelConfig(id="inbox", type="inapp"), payload)

    assert not receipt.delivered
    # Still kept in the local inbox.
    assert channel.inbox() == [payload]
