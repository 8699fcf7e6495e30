"""End-to-end run against a live RabbitMQ broker with a fake warehouse.

Run with ``pytest -m integration`` and RABBITMQ_ADDRESS pointing at a broker
(defaults to localhost:5672, guest/guest).
"""
from __future__ import annotations

import asyncio
import json
import os
import uuid

import aio_pika
import pytest

from queue_to_bigquery.app.composition import build_supervisor
from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.infrastructure.messaging.factory import create_message_consumer
from tests.fakes import FakeWarehouseClient

pytestmark = pytest.mark.integration

BROKER_ADDRESS = os.environ.get("RABBITMQ_ADDRESS", "localhost:5672")


def _settings(topic: str) -> Settings:
    return Settings(
        _env_file=None,
        TOPIC=topic,
        CHANNEL="bigquery#ephemeral",
        BROKER_ADDRESSES=BROKER_ADDRESS,
        WAREHOUSE_PROJECT="proj",
        WAREHOUSE_DATASET="events",
        WAREHOUSE_TABLE="clicks",
        CREDENTIALS_FILE="unused.json",
        MAX_ROWS=10,
        MAX_IN_FLIGHT=20,
        TIME_BEFORE_FLUSH_SECONDS=0.2,
        MAX_CONNECTION_ATTEMPTS=2,
    )


async def _publish(topic: str, payloads: list[bytes]) -> None:
    connection = await aio_pika.connect_robust(f"amqp://guest:guest@{BROKER_ADDRESS}/")
    async with connection:
        channel = await connection.channel()
        exchange = await channel.declare_exchange(topic, aio_pika.ExchangeType.FANOUT, durable=True)
        for index, body in enumerate(payloads):
            await exchange.publish(aio_pika.Message(body=body, message_id=f"{topic}-{index}"), routing_key="")


def test_messages_flow_from_broker_into_batches():
    topic = f"it-{uuid.uuid4().hex[:8]}"
    settings = _settings(topic)
    warehouse = FakeWarehouseClient()
    payloads = [json.dumps({"id": i}).encode() for i in range(25)] + [b"not json"]

    async def scenario():
        consumer = create_message_consumer(settings, settings.broker_addresses)
        try:
            await consumer.connect()
        except Exception as exc:  # noqa: BLE001
            pytest.skip(f"no broker at {BROKER_ADDRESS}: {exc}")
        supervisor = build_supervisor(settings, consumer, warehouse)
        runner = asyncio.create_task(supervisor.run())
        try:
            await asyncio.sleep(0.2)
            await _publish(topic, payloads)
            for _ in range(100):
                if sum(warehouse.batch_sizes) >= 25:
                    break
                await asyncio.sleep(0.05)
            supervisor.request_shutdown()
            await asyncio.wait_for(runner, timeout=5)
        finally:
            await consumer.close()

    asyncio.run(scenario())

    rows = [row for call in warehouse.inserts for row in call["rows"]]
    assert sorted(row["id"] for row in rows) == list(range(25))
    assert all(size <= 10 for size in warehouse.batch_sizes)
    assert {rid for call in warehouse.inserts for rid in call["row_ids"]} == {f"{topic}-{i}" for i in range(25)}
