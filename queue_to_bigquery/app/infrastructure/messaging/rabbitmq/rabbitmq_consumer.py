"""
RabbitMQ consumer for one broker: connection lifecycle, topic/channel declaration, and consume loop.

Topology:
  The topic is a durable fanout exchange. The channel is a queue named
  "<topic>.<channel>" bound to it, so every channel receives its own copy of the
  topic and consumers sharing a channel split its messages. A channel ending in
  "#ephemeral" gets a non-durable, auto-delete queue.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> BOUND, then CONSUMING once
  start_consuming() subscribes a handler.
  On broker disconnect: RECONNECTING (backoff) -> CONNECTED -> BOUND -> CONSUMING
  (re-subscribes with the stored handler).
  On shutdown: CLOSING -> close channel/connection -> CLOSED.

Concurrency:
  - Connection close callback may run from another thread; we schedule _reconnect_loop
    on the event loop via call_soon_threadsafe(create_task(...)).
  - close() and _reconnect_loop both acquire _lock around teardown and re-subscribe
    respectively, so we never close the channel while consume() is in progress, and
    reconnect re-checks _closing under the lock before subscribing.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aio_pika
from loguru import logger

from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.constants import EPHEMERAL_CHANNEL_SUFFIX
from queue_to_bigquery.app.core import SERVICE_NAME, USER_AGENT
from queue_to_bigquery.app.core.backoff import exponential_backoff
from queue_to_bigquery.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from queue_to_bigquery.app.infrastructure.messaging.rabbitmq.constants import ConsumerState
from queue_to_bigquery.app.ports.message_consumer import MessageHandler


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def queue_name_for(topic: str, channel: str) -> str:
    return f"{topic}.{channel}"


class RabbitMQConsumer:
    """MessageConsumer implementation for a single broker address."""

    def __init__(self, settings: Settings, broker_address: str, *, prefetch_count: int) -> None:
        self._settings = settings
        self._broker_address = broker_address
        self._prefetch_count = prefetch_count
        self._state = ConsumerState.DISCONNECTED
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.Channel | None = None
        self._queue: aio_pika.Queue | None = None
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handler: MessageHandler | None = None
        self._consumer_tag: str | None = None

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def broker_address(self) -> str:
        return self._broker_address

    def _set_state(self, state: ConsumerState) -> None:
        self._state = state

    def _build_amqp_url(self) -> str:
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._broker_address}/"
        )

    async def _open_connection(self) -> aio_pika.RobustConnection:
        return await aio_pika.connect_robust(
            self._build_amqp_url(),
            client_properties={"connection_name": USER_AGENT},
        )

    def _register_close_callback(self, connection: aio_pika.RobustConnection) -> None:
        conn = getattr(connection, "connection", connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        self._set_state(ConsumerState.RECONNECTING)
        _log("broker_disconnect_detected", broker=self._broker_address)
        if (self._reconnect_task is None or self._reconnect_task.done()) and self._loop:
            def schedule() -> None:
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())
            self._loop.call_soon_threadsafe(schedule)

    async def _open_channel_and_declare(self) -> None:
        if not self._connection:
            return
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)

        topic, channel = self._settings.topic, self._settings.channel
        ephemeral = channel.endswith(EPHEMERAL_CHANNEL_SUFFIX)
        exchange = await self._channel.declare_exchange(
            topic,
            aio_pika.ExchangeType.FANOUT,
            durable=True,
        )
        arguments: dict[str, Any] = {}
        if self._settings.queue_max_length is not None:
            arguments["x-max-length"] = self._settings.queue_max_length
            arguments["x-overflow"] = "reject-publish"
        self._queue = await self._channel.declare_queue(
            queue_name_for(topic, channel),
            durable=not ephemeral,
            auto_delete=ephemeral,
            arguments=arguments or None,
        )
        await self._queue.bind(exchange)
        self._set_state(ConsumerState.BOUND)

    async def _close_channel_and_connection(self) -> None:
        self._queue = None
        self._consumer_tag = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def connect(self) -> None:
        self._set_state(ConsumerState.CONNECTING)
        _log("rmq_connecting", broker=self._broker_address)
        async for attempt, delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            _log("rmq_connect_attempt", broker=self._broker_address, attempt=attempt, delay=delay)
            try:
                self._connection = await self._open_connection()
                self._loop = asyncio.get_running_loop()
                self._register_close_callback(self._connection)
                break
            except Exception as e:
                logger.warning("rmq connect to {} failed: {}", self._broker_address, e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", broker=self._broker_address, attempt=attempt)
                    self._set_state(ConsumerState.DISCONNECTED)
                    raise
        self._set_state(ConsumerState.CONNECTED)
        _log("rmq_connected", broker=self._broker_address, prefetch_count=self._prefetch_count)
        await self._open_channel_and_declare()

    async def start_consuming(self, handler: MessageHandler) -> str:
        if self._queue is None:
            raise RuntimeError("consumer not connected")
        async with self._lock:
            if self._queue is None:
                raise RuntimeError("consumer not connected")
            self._handler = handler
            self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
            self._set_state(ConsumerState.CONSUMING)
            return self._consumer_tag

    async def _on_message(self, raw_message: aio_pika.abc.AbstractIncomingMessage) -> None:
        if self._handler is None:
            await raw_message.nack(requeue=True)
            return
        await self._handler(AioPikaMessageAdapter(raw_message))

    async def cancel(self, consumer_tag: str) -> None:
        async with self._lock:
            self._handler = None
            if self._queue is not None and self._consumer_tag is not None:
                await self._queue.cancel(self._consumer_tag)
                self._consumer_tag = None
                self._set_state(ConsumerState.BOUND)

    async def _reconnect_loop(self) -> None:
        self._set_state(ConsumerState.RECONNECTING)
        async for attempt, delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            if self._closing:
                return
            _log("rmq_reconnect_attempt", broker=self._broker_address, attempt=attempt)
            try:
                self._connection = await self._open_connection()
                if self._loop is None:
                    self._loop = asyncio.get_running_loop()
                self._register_close_callback(self._connection)
                self._set_state(ConsumerState.CONNECTED)
                await self._open_channel_and_declare()
                async with self._lock:
                    if self._closing:
                        return
                    if self._handler is not None and self._queue is not None:
                        self._consumer_tag = await self._queue.consume(self._on_message, no_ack=False)
                        self._set_state(ConsumerState.CONSUMING)
                _log("rmq_reconnected", broker=self._broker_address)
                return
            except Exception as e:
                logger.warning("reconnect to {} failed: {}", self._broker_address, e)
        _log(
            "rmq_reconnect_exhausted",
            broker=self._broker_address,
            max_attempts=self._settings.max_connection_attempts,
        )
        self._set_state(ConsumerState.DISCONNECTED)

    async def close(self) -> None:
        self._closing = True
        self._set_state(ConsumerState.CLOSING)
        _log("consumer_shutdown", broker=self._broker_address)
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._close_channel_and_connection()
        self._set_state(ConsumerState.CLOSED)
