"""Pipeline composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from queue_to_bigquery.app.application.sink_writer import SinkWriter
from queue_to_bigquery.app.application.supervisor import Supervisor
from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.core import SERVICE_NAME
from queue_to_bigquery.app.domain.batch_accumulator import BatchAccumulator
from queue_to_bigquery.app.domain.flow_control import FlowController
from queue_to_bigquery.app.domain.models import TableRef
from queue_to_bigquery.app.infrastructure.messaging.discovery import BrokerDiscovery
from queue_to_bigquery.app.infrastructure.messaging.factory import create_message_consumer
from queue_to_bigquery.app.infrastructure.warehouse.factory import create_warehouse_client
from queue_to_bigquery.app.ports.message_consumer import MessageConsumer
from queue_to_bigquery.app.ports.warehouse_client import WarehouseClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def table_ref_from_settings(settings: Settings) -> TableRef:
    return TableRef(
        project=settings.warehouse_project,
        dataset=settings.warehouse_dataset,
        table=settings.warehouse_table,
    )


def build_supervisor(
    settings: Settings,
    consumer: MessageConsumer,
    warehouse_client: WarehouseClient,
) -> Supervisor:
    """Wire flow control, batching and the sink writer around the given collaborators."""
    sink_writer = SinkWriter(
        warehouse_client,
        table_ref_from_settings(settings),
        max_attempts=settings.insert_max_attempts,
        attempt_timeout_seconds=settings.insert_timeout_seconds,
        initial_backoff_seconds=settings.initial_backoff_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        backoff_multiplier=settings.backoff_multiplier,
    )
    return Supervisor(
        consumer,
        FlowController(settings.max_in_flight),
        BatchAccumulator(
            settings.max_rows,
            settings.time_before_flush_seconds,
            max_bytes=settings.max_batch_bytes,
        ),
        sink_writer,
        tick_seconds=settings.flush_check_interval,
    )


class PipelineDependencies:
    """Holds wired pipeline dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._warehouse_client: WarehouseClient | None = None
        self._message_consumer: MessageConsumer | None = None
        self._supervisor: Supervisor | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def warehouse_client(self) -> WarehouseClient:
        if self._warehouse_client is None:
            raise RuntimeError("warehouse_client is not initialized")
        return self._warehouse_client

    @property
    def message_consumer(self) -> MessageConsumer:
        if self._message_consumer is None:
            raise RuntimeError("message_consumer is not initialized")
        return self._message_consumer

    @property
    def supervisor(self) -> Supervisor:
        if self._supervisor is None:
            raise RuntimeError("supervisor is not initialized")
        return self._supervisor

    async def connect(self) -> None:
        self._warehouse_client = create_warehouse_client(self._settings)
        await self._warehouse_client.verify(table_ref_from_settings(self._settings))
        _log("warehouse_verified", table=str(table_ref_from_settings(self._settings)))

        broker_addresses = await self._resolve_broker_addresses()
        self._message_consumer = create_message_consumer(self._settings, broker_addresses)
        await self._message_consumer.connect()

        self._supervisor = build_supervisor(
            self._settings,
            self._message_consumer,
            self._warehouse_client,
        )

    async def _resolve_broker_addresses(self) -> list[str]:
        if self._settings.broker_addresses:
            return list(self._settings.broker_addresses)
        async with httpx.AsyncClient() as client:
            discovery = BrokerDiscovery(
                client,
                self._settings.discovery_addresses,
                timeout_seconds=self._settings.discovery_timeout_seconds,
            )
            return await discovery.resolve(
                self._settings.topic,
                initial_backoff_seconds=self._settings.initial_backoff_seconds,
                max_backoff_seconds=self._settings.max_backoff_seconds,
                backoff_multiplier=self._settings.backoff_multiplier,
                max_attempts=self._settings.max_connection_attempts,
            )

    async def close(self) -> None:
        if self._message_consumer is not None:
            try:
                await self._message_consumer.close()
            except Exception as exc:
                logger.warning("message consumer close failed: {}", exc)
            self._message_consumer = None

        if self._warehouse_client is not None:
            try:
                await self._warehouse_client.close()
            except Exception as exc:
                logger.warning("warehouse client close failed: {}", exc)
            self._warehouse_client = None

        self._supervisor = None


def create_pipeline_dependencies(settings: Settings | None = None) -> PipelineDependencies:
    return PipelineDependencies(settings=settings or Settings())
