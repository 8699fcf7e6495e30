"""Unit tests for HTTP broker discovery (httpx.MockTransport, no network)."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from queue_to_bigquery.app.domain.errors import BrokerDiscoveryError
from queue_to_bigquery.app.infrastructure.messaging.discovery import BrokerDiscovery, parse_producers


def _producer(host: str, port: int) -> dict:
    return {"broadcast_address": host, "tcp_port": port}


def _run_lookup(handler, addresses, topic="clicks"):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            discovery = BrokerDiscovery(client, addresses, timeout_seconds=1.0)
            return await discovery.lookup(topic)

    return asyncio.run(scenario())


def test_parse_producers_accepts_plain_and_wrapped_payloads():
    plain = {"producers": [_producer("rabbit-1", 5672)]}
    wrapped = {"status_code": 200, "data": {"producers": [_producer("rabbit-2", "5672")]}}

    assert parse_producers(plain) == ["rabbit-1:5672"]
    assert parse_producers(wrapped) == ["rabbit-2:5672"]
    assert parse_producers({"producers": [{"broadcast_address": "no-port"}]}) == []


def test_parse_producers_rejects_non_object():
    with pytest.raises(ValueError):
        parse_producers(["rabbit-1:5672"])
    with pytest.raises(ValueError):
        parse_producers({"producers": "rabbit-1:5672"})


def test_parse_producers_skips_malformed_entries():
    payload = {"producers": ["rabbit-9:5672", None, 7, _producer("rabbit-1", 5672)]}

    assert parse_producers(payload) == ["rabbit-1:5672"]


def test_lookup_merges_results_from_every_address_in_order():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.url.path, request.url.params.get("topic")))
        if request.url.host == "lookup-1":
            return httpx.Response(200, json={"producers": [_producer("rabbit-1", 5672), _producer("rabbit-2", 5672)]})
        return httpx.Response(200, json={"data": {"producers": [_producer("rabbit-2", 5672), _producer("rabbit-3", 5672)]}})

    brokers = _run_lookup(handler, ["lookup-1:4161", "http://lookup-2:4161/"])

    assert brokers == ["rabbit-1:5672", "rabbit-2:5672", "rabbit-3:5672"]
    assert seen == [("lookup-1", "/lookup", "clicks"), ("lookup-2", "/lookup", "clicks")]


def test_lookup_skips_failing_addresses():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.host == "broken":
            return httpx.Response(500, text="boom")
        if request.url.host == "garbage":
            return httpx.Response(200, text="not json")
        if request.url.host == "odd":
            return httpx.Response(200, json={"producers": {"rabbit-9": 5672}})
        return httpx.Response(200, json={"producers": [_producer("rabbit-1", 5672)]})

    brokers = _run_lookup(handler, ["down:4161", "broken:4161", "garbage:4161", "odd:4161", "ok:4161"])

    assert brokers == ["rabbit-1:5672"]


def test_resolve_retries_until_a_broker_appears():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(200, json={"producers": []})
        return httpx.Response(200, json={"producers": [_producer("rabbit-1", 5672)]})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            discovery = BrokerDiscovery(client, ["lookup:4161"], timeout_seconds=1.0)
            return await discovery.resolve(
                "clicks",
                initial_backoff_seconds=0.0,
                max_backoff_seconds=0.0,
                backoff_multiplier=2.0,
                max_attempts=5,
            )

    assert asyncio.run(scenario()) == ["rabbit-1:5672"]
    assert calls["n"] == 3


def test_resolve_gives_up_with_broker_discovery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"producers": []})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            discovery = BrokerDiscovery(client, ["lookup:4161"], timeout_seconds=1.0)
            await discovery.resolve(
                "clicks",
                initial_backoff_seconds=0.0,
                max_backoff_seconds=0.0,
                backoff_multiplier=2.0,
                max_attempts=2,
            )

    with pytest.raises(BrokerDiscoveryError, match="after 2 lookup attempts"):
        asyncio.run(scenario())


def test_discovery_requires_addresses():
    with pytest.raises(ValueError):
        BrokerDiscovery(httpx.AsyncClient(), [], timeout_seconds=1.0)
