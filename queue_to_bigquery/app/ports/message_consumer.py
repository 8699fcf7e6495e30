"""Port: subscription to a topic/channel on one or more brokers."""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from queue_to_bigquery.app.ports.incoming_message import IncomingMessage

MessageHandler = Callable[[IncomingMessage], Awaitable[None]]


class MessageConsumer(Protocol):
    async def connect(self) -> None:
        """Connect and declare the topic and channel. Raise after exhausting retries."""
        ...

    async def start_consuming(self, handler: MessageHandler) -> str:
        """Deliver every message to handler until cancelled. Returns the subscription tag."""
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop delivery for the tag. Unresolved messages stay owned by the handler."""
        ...

    async def close(self) -> None: ...
