"""Pipeline supervisor: admission, decoding, batching, supervised flushes and drain.

Lifecycle:
  run() -> start consuming + timeout ticker -> wait for stop request or fatal
  flush error -> drain() -> re-raise the fatal error, if any.

Drain:
  stop ticker -> cancel consumption -> close admission (handlers still waiting
  for credit requeue their message) -> force-flush the open batch -> await every
  in-flight flush.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from queue_to_bigquery.app.application.sink_writer import SinkWriter
from queue_to_bigquery.app.constants import BODY_PREVIEW_LENGTH
from queue_to_bigquery.app.core import SERVICE_NAME
from queue_to_bigquery.app.domain.batch_accumulator import BatchAccumulator
from queue_to_bigquery.app.domain.decoder import decode
from queue_to_bigquery.app.domain.delivery import Delivery
from queue_to_bigquery.app.domain.errors import AuthError, DecodeError
from queue_to_bigquery.app.domain.flow_control import FlowControlClosedError, FlowController
from queue_to_bigquery.app.domain.models import Batch, FlushReport, Record
from queue_to_bigquery.app.ports.incoming_message import IncomingMessage
from queue_to_bigquery.app.ports.message_consumer import MessageConsumer


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class Supervisor:
    def __init__(
        self,
        consumer: MessageConsumer,
        flow_controller: FlowController,
        accumulator: BatchAccumulator,
        sink_writer: SinkWriter,
        *,
        tick_seconds: float,
        decoder: Callable[[bytes], Record] = decode,
    ) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        self._consumer = consumer
        self._flow_controller = flow_controller
        self._accumulator = accumulator
        self._sink_writer = sink_writer
        self._tick_seconds = tick_seconds
        self._decoder = decoder
        self._stop_requested = asyncio.Event()
        self._closing = False
        self._fatal_error: BaseException | None = None
        self._flush_tasks: set[asyncio.Task[FlushReport]] = set()
        self._ticker: asyncio.Task[None] | None = None
        self._consumer_tag: str | None = None
        self._drained = False

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def fatal_error(self) -> BaseException | None:
        return self._fatal_error

    @property
    def pending_flushes(self) -> int:
        return len(self._flush_tasks)

    async def handle_message(self, message: IncomingMessage) -> None:
        """Admit, decode and buffer one message. Every admitted message is resolved exactly once."""
        if self._closing:
            await message.requeue()
            return
        try:
            await self._flow_controller.admit()
        except FlowControlClosedError:
            _log("admission_refused", message_id=message.message_id)
            await message.requeue()
            return

        delivery = Delivery(message, self._flow_controller)
        if self._closing:
            await delivery.requeue()
            return

        try:
            record = self._decoder(message.body)
        except DecodeError as exc:
            logger.bind(
                service_name=SERVICE_NAME,
                event="decode_failed",
                message_id=message.message_id,
                error=str(exc),
                body_preview=message.body[:BODY_PREVIEW_LENGTH].decode("utf-8", errors="replace"),
            ).warning("")
            await delivery.ack()
            return
        except Exception:
            await delivery.requeue()
            raise

        batch = self._accumulator.add(record, delivery, size=len(message.body))
        if batch is not None:
            self._spawn_flush(batch)

    async def run(self) -> None:
        self._consumer_tag = await self._consumer.start_consuming(self._handle_delivery)
        self._ticker = asyncio.create_task(self._tick_loop())
        _log(
            "pipeline_started",
            max_in_flight=self._flow_controller.capacity,
            max_rows=self._accumulator.max_rows,
            time_before_flush=self._accumulator.time_before_flush,
            table=str(self._sink_writer.table),
        )
        try:
            await self._stop_requested.wait()
        finally:
            await self.drain()
        if self._fatal_error is not None:
            raise self._fatal_error

    def request_shutdown(self) -> None:
        if not self._stop_requested.is_set():
            _log("shutdown_requested")
            self._stop_requested.set()

    async def drain(self) -> None:
        if self._drained:
            return
        self._drained = True
        _log("pipeline_draining", pending_rows=self._accumulator.pending_rows, pending_flushes=len(self._flush_tasks))
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._consumer_tag is not None:
            try:
                await self._consumer.cancel(self._consumer_tag)
            except Exception as exc:
                logger.warning("consumer cancel failed (continuing drain): {}", exc)
            self._consumer_tag = None

        self._close_admission()

        batch = self._accumulator.drain()
        if batch is not None:
            self._spawn_flush(batch)

        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
        _log("pipeline_drained", in_flight=self._flow_controller.in_flight)

    async def _handle_delivery(self, message: IncomingMessage) -> None:
        try:
            await self.handle_message(message)
        except Exception as e:
            logger.exception("message handling failed: {}", e)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            batch = self._accumulator.check_timeout()
            if batch is not None:
                self._spawn_flush(batch)

    def _spawn_flush(self, batch: Batch) -> None:
        task = asyncio.create_task(self._sink_writer.flush(batch))
        self._flush_tasks.add(task)
        task.add_done_callback(self._on_flush_done)

    def _on_flush_done(self, task: asyncio.Task[FlushReport]) -> None:
        self._flush_tasks.discard(task)
        if task.cancelled():
            _log("batch_flush_cancelled")
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, AuthError):
            logger.error("warehouse rejected credentials, stopping pipeline: {}", exc)
            if self._fatal_error is None:
                self._fatal_error = exc
            self._close_admission()
            self._stop_requested.set()
            return
        logger.opt(exception=exc).error("batch flush crashed; its messages were requeued: {}", exc)

    def _close_admission(self) -> None:
        self._closing = True
        self._flow_controller.close()
