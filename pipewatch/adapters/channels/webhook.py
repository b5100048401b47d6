"""
Webhook channel - POSTs the alert payload as JSON.

Channel config keys:
    url: target endpoint (required)
    headers: extra request headers
    secret: when set, an HMAC-SHA256 of the body is sent in X-Pipewatch-Signature
"""

import hashlib
import hmac
import json
import logging

import httpx

from pipewatch.core.domain.alert import ChannelConfig
from pipewatch.core.ports.notifier import AlertPayload, DeliveryReceipt, NotificationChannel

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Pipewatch-Signature"


def sign(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookChannel(NotificationChannel):

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, channel: ChannelConfig, payload: AlertPayload) -> DeliveryReceipt:
        url = channel.config.get("url")
        if not url:
            return DeliveryReceipt(delivered=False, error=f"channel '{channel.id}' has no url")

        body = json.dumps(payload.model_dump(mode="json")).encode("utf-8")
        headers = {"Content-Type": "application/json", **channel.config.get("headers", {})}
        if channel.config.get("secret"):
            headers[SIGNATURE_HEADER] = sign(body, channel.config["secret"])

        client = await self._get_client()
        response = await client.post(url, content=body, headers=headers)
        if response.status_code >= 400:
            return DeliveryReceipt(delivered=False, error=f"HTTP {response.status_code} from {url}")

        logger.debug(f"Webhook '{channel.id}' accepted alert {payload.alert_id}")
        return DeliveryReceipt(delivered=True)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
