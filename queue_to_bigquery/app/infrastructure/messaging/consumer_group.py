"""Fan a single subscription out over several broker consumers.

Every member gets the same handler; the group tag returned by start_consuming
cancels all member subscriptions at once.
"""
from __future__ import annotations

import itertools
from typing import Sequence

from loguru import logger

from queue_to_bigquery.app.ports.message_consumer import MessageConsumer, MessageHandler


class ConsumerGroup:
    """MessageConsumer implementation over one or more member consumers."""

    def __init__(self, members: Sequence[MessageConsumer]) -> None:
        if not members:
            raise ValueError("consumer group needs at least one member")
        self._members = list(members)
        self._tags: dict[str, list[tuple[MessageConsumer, str]]] = {}
        self._ids = itertools.count(1)

    @property
    def members(self) -> list[MessageConsumer]:
        return list(self._members)

    async def connect(self) -> None:
        for member in self._members:
            await member.connect()

    async def start_consuming(self, handler: MessageHandler) -> str:
        group_tag = f"group-{next(self._ids)}"
        subscriptions: list[tuple[MessageConsumer, str]] = []
        self._tags[group_tag] = subscriptions
        for member in self._members:
            subscriptions.append((member, await member.start_consuming(handler)))
        return group_tag

    async def cancel(self, consumer_tag: str) -> None:
        for member, tag in self._tags.pop(consumer_tag, []):
            try:
                await member.cancel(tag)
            except Exception as exc:
                logger.warning("member cancel failed (continuing): {}", exc)

    async def close(self) -> None:
        for member in self._members:
            try:
                await member.close()
            except Exception as exc:
                logger.warning("member close failed (continuing): {}", exc)
