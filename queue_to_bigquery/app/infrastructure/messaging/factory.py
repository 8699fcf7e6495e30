"""Message consumer factory: selects implementation from config. Only place that imports concrete consumers."""
from __future__ import annotations

from typing import Sequence

from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.infrastructure.messaging.consumer_group import ConsumerGroup
from queue_to_bigquery.app.infrastructure.messaging.rabbitmq.rabbitmq_consumer import RabbitMQConsumer
from queue_to_bigquery.app.ports.message_consumer import MessageConsumer


def prefetch_per_broker(max_in_flight: int, broker_count: int) -> int:
    """Split the in-flight budget across broker connections (at least 1 each)."""
    return max(1, max_in_flight // max(1, broker_count))


def create_message_consumer(settings: Settings, broker_addresses: Sequence[str]) -> MessageConsumer:
    backend = settings.consumer_backend.strip().lower()
    if not broker_addresses:
        raise ValueError("no broker addresses to consume from")

    if backend == "rabbitmq":
        prefetch = prefetch_per_broker(settings.max_in_flight, len(broker_addresses))
        members = [
            RabbitMQConsumer(settings, address, prefetch_count=prefetch)
            for address in broker_addresses
        ]
        if len(members) == 1:
            return members[0]
        return ConsumerGroup(members)

    raise ValueError(f"Unsupported consumer backend: {backend}")
