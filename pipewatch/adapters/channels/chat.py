"""
Chat channel - posts a formatted message to a Slack-compatible incoming webhook.
"""

import logging

import httpx

from pipewatch.core.domain.alert import ChannelConfig
from pipewatch.core.ports.notifier import AlertPayload, DeliveryReceipt, NotificationChannel

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    "low": ":information_source:",
    "medium": ":warning:",
    "high": ":rotating_light:",
    "critical": ":fire:",
}


def format_message(payload: AlertPayload) -> str:
    lines = [f"{SEVERITY_EMOJI.get(payload.severity, '')} *[{payload.severity.upper()}]* {payload.title}".strip()]
    lines.append(payload.message)
    if payload.stage:
        lines.append(f"_Escalation stage {payload.stage}_")
    mentions = [f"<@{u}>" for u in payload.notify_users] + [f"<!subteam^{r}>" for r in payload.notify_roles]
    if mentions:
        lines.append(" ".join(mentions))
    return "\n".join(lines)


class ChatChannel(NotificationChannel):

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, channel: ChannelConfig, payload: AlertPayload) -> DeliveryReceipt:
        url = channel.config.get("webhook_url")
        if not url:
            return DeliveryReceipt(delivered=False, error=f"channel '{channel.id}' has no webhook_url")

        body = {"text": format_message(payload)}
        if channel.config.get("channel"):
            body["channel"] = channel.config["channel"]

        client = await self._get_client()
        response = await client.post(url, json=body)
        if response.status_code >= 400:
            return DeliveryReceipt(delivered=False, error=f"HTTP {response.status_code} from chat webhook")
        return DeliveryReceipt(delivered=True)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
