"""
Tests for the Kafka publisher.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaException

from pipewatch.adapters.channels.kafka import KafkaPublisher

pytestmark = pytest.mark.unit


@pytest.fixture
def mock_producer():
    """Mock Kafka Producer."""
    with patch("pipewatch.adapters.channels.kafka.Producer") as MockProducer:
        producer_instance = MagicMock()
        MockProducer.return_value = producer_instance
        yield producer_instance


def test_producer_is_created_lazily(mock_producer):
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")
    assert publisher.producer is None

    assert publisher._get_producer() is mock_producer
    assert publisher.producer is mock_producer


def test_publish_message(mock_producer):
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")

    assert publisher.publish_message("pipewatch.notifications", {"alert_id": "a1", "severity": "high"}, key="a1")

    call_kwargs = mock_producer.produce.call_args.kwargs
    assert call_kwargs["topic"] == "pipewatch.notifications"
    assert call_kwargs["key"] == b"a1"
    assert json.loads(call_kwargs["value"].decode("utf-8")) == {"alert_id": "a1", "severity": "high"}
    mock_producer.poll.assert_called_once_with(0)


def test_publish_message_without_key(mock_producer):
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")
    publisher.publish_message("topic", {"x": 1})
    assert mock_producer.produce.call_args.kwargs["key"] is None


@pytest.mark.parametrize("error", [KafkaException("broker down"), BufferError("queue full")])
def test_publish_failure_returns_false(mock_producer, error):
    mock_producer.produce.side_effect = error
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")
    assert publisher.publish_message("topic", {"x": 1}) is False


def test_flush_and_close(mock_producer):
    mock_producer.flush.return_value = 0
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")
    publisher.flush()
    publisher._get_producer()
    publisher.flush(timeout=5)
    mock_producer.flush.assert_called_once_with(5)

    publisher.close()
    assert publisher.producer is None


def test_delivery_callback_logs_errors(caplog):
    publisher = KafkaPublisher(bootstrap_servers="localhost:9092")
    publisher._delivery_callback("timeout", None)
    assert "Message delivery failed" in caplog.text
