"""
In-app channel - keeps notifications in a per-audience inbox and optionally
mirrors them to a Kafka topic.
"""

import logging
from collections import defaultdict, deque

from pipewatch.adapters.channels.kafka import KafkaPublisher
from pipewatch.core.domain.alert import ChannelConfig
from pipewatch.core.ports.notifier import AlertPayload, DeliveryReceipt, NotificationChannel

logger = logging.getLogger(__name__)


class InAppChannel(NotificationChannel):

    def __init__(self, publisher: KafkaPublisher | None = None, topic: str = "pipewatch.notifications", inbox_size: int = 500):
        self.publisher = publisher
        self.topic = topic
        self._inbox: dict[str, deque[AlertPayload]] = defaultdict(lambda: deque(maxlen=inbox_size))

    async def send(self, channel: ChannelConfig, payload: AlertPayload) -> DeliveryReceipt:
        audiences = [channel.config.get("audience", "all")]
        audiences += [f"user:{u}" for u in payload.notify_users]
        audiences += [f"role:{r}" for r in payload.notify_roles]
        for audience in audiences:
            self._inbox[audience].append(payload)

        if self.publisher is not None:
            published = self.publisher.publish_message(
                self.topic,
                {"audiences": audiences, **payload.model_dump(mode="json")},
                key=payload.alert_id,
            )
            if not published:
                return DeliveryReceipt(delivered=False, error=f"Kafka publish to '{self.topic}' failed")
        return DeliveryReceipt(delivered=True)

    def inbox(self, audience: str = "all") -> list[AlertPayload]:
        return list(self._inbox.get(audience, ()))

    async def close(self) -> None:
        if self.publisher is not None:
            self.publisher.close()
