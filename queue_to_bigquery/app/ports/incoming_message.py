"""Port: one message delivered from a channel. Broker adapters implement it."""
from __future__ import annotations

from typing import Protocol


class IncomingMessage(Protocol):
    """A delivered message that must be resolved exactly once: ack() or requeue()."""

    @property
    def message_id(self) -> str | None:
        """Publisher-assigned id, stable across redeliveries when present."""
        ...

    @property
    def body(self) -> bytes: ...

    async def ack(self) -> None:
        """Remove the message from the channel."""
        ...

    async def requeue(self) -> None:
        """Hand the message back to the channel for redelivery."""
        ...
