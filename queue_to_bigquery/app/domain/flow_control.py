"""Credit-based admission gate bounding in-flight messages.

A credit is taken when a message is admitted and returned when that message is
acked or requeued. The broker prefetch is configured from the same capacity, so
while no credit is free the broker stops delivering (back-pressure upstream).
"""
from __future__ import annotations

import asyncio
from collections import deque


class FlowControlClosedError(Exception):
    """Raised to callers waiting for credit when the controller is closed."""


class FlowController:
    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._in_flight = 0
        self._peak = 0
        self._closed = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def available(self) -> int:
        return self._capacity - self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    @property
    def closed(self) -> bool:
        return self._closed

    def try_admit(self) -> bool:
        """Take a credit without waiting. Denied while waiters are queued."""
        if self._closed or self._in_flight >= self._capacity or self._waiters:
            return False
        self._take()
        return True

    async def admit(self) -> None:
        """Wait until a credit is granted. Raises FlowControlClosedError once closed."""
        if self.try_admit():
            return
        if self._closed:
            raise FlowControlClosedError("flow controller is closed")

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            # The credit may already have been handed over.
            if fut.done() and not fut.cancelled() and fut.exception() is None:
                self.release()
            raise
        finally:
            try:
                self._waiters.remove(fut)
            except ValueError:
                pass

    def release(self) -> None:
        """Return one credit, transferring it to the oldest live waiter if any."""
        if self._in_flight <= 0:
            raise RuntimeError("release() called without a matching admission")
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._in_flight -= 1

    def close(self) -> None:
        """Refuse further grants and fail every pending waiter."""
        self._closed = True
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_exception(FlowControlClosedError("flow controller is closed"))

    def _take(self) -> None:
        self._in_flight += 1
        if self._in_flight > self._peak:
            self._peak = self._in_flight
