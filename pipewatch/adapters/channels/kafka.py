"""
Kafka Producer Adapter for pipewatch.

Publishes in-app notifications to a Kafka topic for downstream consumers
(dashboards, mobile push).
"""

import json
import logging
from typing import Any

from confluent_kafka import KafkaException, Producer

logger = logging.getLogger(__name__)


class KafkaPublisher:
    """
    Adapter for producing JSON messages to Kafka topics.
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "pipewatch-notifications"):
        """
        Initialize the Kafka producer.

        Args:
            bootstrap_servers: Comma-separated list of Kafka broker addresses
            client_id: Client id reported to the brokers
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = None

    def _get_producer(self) -> Producer:
        """Lazy initialization of Kafka producer."""
        if self.producer is None:
            config = {
                'bootstrap.servers': self.bootstrap_servers,
                'client.id': self.client_id,
                'acks': 'all',
                'retries': 3,
            }
            self.producer = Producer(config)
        return self.producer

    def _delivery_callback(self, err, msg):
        if err:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(f"Message delivered to {msg.topic()} [{msg.partition()}]")

    def publish_message(self, topic: str, message: dict[str, Any], key: str | None = None) -> bool:
        """
        Queue a message for delivery.

        Args:
            topic: Kafka topic to publish to
            message: Message payload (JSON serialized)
            key: Optional message key for partitioning

        Returns:
            True if the message was handed to the producer
        """
        try:
            producer = self._get_producer()
            producer.produce(
                topic=topic,
                value=json.dumps(message, default=str).encode('utf-8'),
                key=key.encode('utf-8') if key else None,
                callback=self._delivery_callback,
            )
            producer.poll(0)
        except (KafkaException, BufferError) as e:
            logger.error(f"Failed to publish message to '{topic}': {e}")
            return False
        return True

    def flush(self, timeout: float = 10.0):
        """Wait for all messages to be delivered."""
        if self.producer:
            remaining = self.producer.flush(timeout)
            if remaining > 0:
                logger.warning(f"{remaining} messages were not delivered within timeout")

    def close(self):
        if self.producer:
            self.producer.flush(10.0)
            self.producer = None
