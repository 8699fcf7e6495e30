"""Batch accumulator: buffers decoded records until a size, byte or time threshold closes the batch.

Concurrency:
  add(), check_timeout() and drain() share a single threading.Lock around the
  open batch. Whichever call closes the batch swaps in a fresh one under the
  lock and is the only caller that receives the closed batch; later appends
  land in the new batch. No awaits happen under the lock, so it is safe to use
  from event-loop tasks as well as worker threads.
"""
from __future__ import annotations

import itertools
import threading
import time
from typing import Callable

from queue_to_bigquery.app.constants import FLUSH_TRIGGER
from queue_to_bigquery.app.domain.delivery import Delivery
from queue_to_bigquery.app.domain.models import Batch, BatchEntry, Record


class BatchAccumulator:
    def __init__(
        self,
        max_rows: int,
        time_before_flush: float,
        *,
        max_bytes: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_rows <= 0:
            raise ValueError("max_rows must be > 0")
        if time_before_flush <= 0:
            raise ValueError("time_before_flush must be > 0")
        self._max_rows = max_rows
        self._time_before_flush = time_before_flush
        self._max_bytes = max_bytes
        self._clock = clock
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._current = self._new_batch()

    @property
    def max_rows(self) -> int:
        return self._max_rows

    @property
    def time_before_flush(self) -> float:
        return self._time_before_flush

    @property
    def pending_rows(self) -> int:
        with self._lock:
            return self._current.row_count

    def add(self, record: Record, delivery: Delivery, *, size: int = 0) -> Batch | None:
        """Append a record. Returns the closed batch when a threshold is reached, else None."""
        with self._lock:
            self._current.append(BatchEntry(record=record, delivery=delivery), size, self._clock())
            if self._current.row_count >= self._max_rows:
                return self._swap(FLUSH_TRIGGER.SIZE)
            if self._max_bytes and self._current.byte_count >= self._max_bytes:
                return self._swap(FLUSH_TRIGGER.BYTES)
            return None

    def check_timeout(self) -> Batch | None:
        """Close the open batch if its oldest record has waited time_before_flush."""
        with self._lock:
            oldest = self._current.oldest_timestamp
            if oldest is None:
                return None
            if self._clock() - oldest < self._time_before_flush:
                return None
            return self._swap(FLUSH_TRIGGER.TIMEOUT)

    def drain(self) -> Batch | None:
        """Close the open batch regardless of thresholds (shutdown)."""
        with self._lock:
            if self._current.row_count == 0:
                return None
            return self._swap(FLUSH_TRIGGER.DRAIN)

    def _swap(self, trigger: str) -> Batch:
        closed = self._current
        closed.trigger = trigger
        self._current = self._new_batch()
        return closed

    def _new_batch(self) -> Batch:
        return Batch(batch_id=next(self._ids), created_at=self._clock())
