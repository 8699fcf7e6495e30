"""Broker discovery over HTTP.

Each discovery address answers ``GET /lookup?topic=<topic>`` with
``{"producers": [{"broadcast_address": ..., "tcp_port": ...}]}`` (optionally
wrapped in ``{"data": ...}``). Results from all addresses are merged.
"""
from __future__ import annotations

from typing import Any, Sequence

import httpx
from loguru import logger

from queue_to_bigquery.app.core import SERVICE_NAME, USER_AGENT
from queue_to_bigquery.app.core.backoff import exponential_backoff
from queue_to_bigquery.app.domain.errors import BrokerDiscoveryError


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _base_url(address: str) -> str:
    address = address.rstrip("/")
    if "://" not in address:
        address = f"http://{address}"
    return address


def parse_producers(payload: Any) -> list[str]:
    """Extract ``host:port`` broker addresses from a lookup response body."""
    if not isinstance(payload, dict):
        raise ValueError("lookup response is not a json object")
    if "producers" not in payload and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    producers = payload.get("producers") or []
    if not isinstance(producers, list):
        raise ValueError("lookup response producers is not a list")
    addresses: list[str] = []
    for producer in producers:
        if not isinstance(producer, dict):
            continue
        host = producer.get("broadcast_address")
        port = producer.get("tcp_port")
        if not host or not port:
            continue
        addresses.append(f"{host}:{int(port)}")
    return addresses


class BrokerDiscovery:
    def __init__(
        self,
        client: httpx.AsyncClient,
        discovery_addresses: Sequence[str],
        *,
        timeout_seconds: float,
    ) -> None:
        if not discovery_addresses:
            raise ValueError("at least one discovery address is required")
        self._client = client
        self._addresses = [_base_url(a) for a in discovery_addresses]
        self._timeout = timeout_seconds

    async def lookup(self, topic: str) -> list[str]:
        """Query every discovery address once; return the merged, ordered broker list."""
        found: list[str] = []
        for base in self._addresses:
            try:
                response = await self._client.get(
                    f"{base}/lookup",
                    params={"topic": topic},
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                    timeout=self._timeout,
                )
                response.raise_for_status()
                brokers = parse_producers(response.json())
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("discovery lookup at {} failed: {}", base, exc)
                continue
            _log("discovery_lookup", discovery=base, topic=topic, brokers=brokers)
            for broker in brokers:
                if broker not in found:
                    found.append(broker)
        return found

    async def resolve(
        self,
        topic: str,
        *,
        initial_backoff_seconds: float,
        max_backoff_seconds: float,
        backoff_multiplier: float,
        max_attempts: int,
    ) -> list[str]:
        """Look up brokers with backoff until at least one is found."""
        attempt = 0
        async for attempt, delay in exponential_backoff(
            initial_backoff_seconds,
            max_backoff_seconds,
            backoff_multiplier,
            max_attempts,
        ):
            brokers = await self.lookup(topic)
            if brokers:
                return brokers
            _log("discovery_no_brokers", topic=topic, attempt=attempt, delay=delay)
        raise BrokerDiscoveryError(
            f"no broker found for topic {topic!r} after {attempt} lookup attempts"
        )
