"""
Notifier Port - uniform send contract implemented by every channel type.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from pipewatch.core.domain.alert import ChannelConfig


class AlertPayload(BaseModel):
    """What a channel receives for one notification."""

    alert_id: str
    configuration_id: str
    type: str
    severity: str
    status: str
    title: str
    message: str
    metric: str
    trigger_value: float
    threshold: float | None = None
    pipeline_id: str | None = None
    created_at: datetime
    stage: int = 0
    notify_roles: list[str] = Field(default_factory=list)
    notify_users: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class DeliveryReceipt:
    delivered: bool
    error: str | None = None


class NotificationChannel(ABC):
    """
    A transport for one channel type (webhook, chat, in-app, ...).

    ``send`` may raise on transport errors; the dispatcher treats a raised
    error and a receipt with ``delivered=False`` the same way.
    """

    @abstractmethod
    async def send(self, channel: ChannelConfig, payload: AlertPayload) -> DeliveryReceipt:
        """
        Deliver one notification.

        Args:
            channel: Channel configuration (endpoint, credentials, ...)
            payload: Rendered alert

        Returns:
            DeliveryReceipt
        """
        ...

    async def close(self) -> None:
        return None
