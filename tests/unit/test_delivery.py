"""Unit tests for exactly-once message resolution."""
from __future__ import annotations

import asyncio

import pytest

from queue_to_bigquery.app.constants import DELIVERY_OUTCOME
from queue_to_bigquery.app.domain.delivery import Delivery
from queue_to_bigquery.app.domain.flow_control import FlowController
from tests.fakes import FakeMessage


def _admitted(message: FakeMessage, fc: FlowController) -> Delivery:
    assert fc.try_admit()
    return Delivery(message, fc)


def test_ack_resolves_message_and_returns_credit():
    fc = FlowController(1)
    msg = FakeMessage({"a": 1}, message_id="m-1")
    delivery = _admitted(msg, fc)

    asyncio.run(delivery.ack())

    assert msg.ack_count == 1
    assert msg.requeue_count == 0
    assert delivery.outcome == DELIVERY_OUTCOME.ACKED
    assert delivery.message_id == "m-1"
    assert fc.in_flight == 0


def test_second_resolution_raises_and_does_not_touch_broker():
    fc = FlowController(1)
    msg = FakeMessage({"a": 1})
    delivery = _admitted(msg, fc)
    asyncio.run(delivery.requeue())

    with pytest.raises(RuntimeError, match="already resolved"):
        asyncio.run(delivery.ack())

    assert msg.resolutions == 1
    assert delivery.outcome == DELIVERY_OUTCOME.REQUEUED
    assert fc.in_flight == 0


def test_broker_failure_still_releases_credit():
    fc = FlowController(1)
    msg = FakeMessage({"a": 1}, fail_on_resolve=ConnectionError("channel closed"))
    delivery = _admitted(msg, fc)

    asyncio.run(delivery.ack())

    assert delivery.resolved is True
    assert fc.in_flight == 0
