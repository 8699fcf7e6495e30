from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from queue_to_bigquery.app.constants import BATCH_STATE
from queue_to_bigquery.app.core import SERVICE_NAME
from queue_to_bigquery.app.core.backoff import exponential_backoff
from queue_to_bigquery.app.domain.errors import AuthError, RejectedRequestError, TransportError
from queue_to_bigquery.app.domain.models import Batch, FlushReport, RowOutcome, TableRef
from queue_to_bigquery.app.ports.warehouse_client import WarehouseClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _warn(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).warning("")


class SinkWriter:
    """
    Submits a closed batch to the warehouse and settles every originating message.

    One insert call per batch. TransportError (and an attempt exceeding its
    deadline) is retried with exponential backoff up to max_attempts; when the
    ceiling is hit every message is requeued and the batch is FAILED. AuthError
    is not retried: the batch is requeued and the error propagates as fatal.

    A RejectedRequestError (the warehouse refused the request content) is not
    retried either. The rows are resent one by one so only the offending row is
    rejected, permanently, and its batch-mates still land.

    On a completed insert each row is settled on its own: accepted rows are
    acked, permanently rejected rows are logged and acked (redelivery would fail
    again), transiently rejected rows are requeued.

    States: ASSEMBLED -> SUBMITTING -> {SUCCEEDED, PARTIALLY_SUCCEEDED, RETRYING, FAILED},
    RETRYING -> SUBMITTING.
    """

    def __init__(
        self,
        client: WarehouseClient,
        table: TableRef,
        *,
        max_attempts: int,
        attempt_timeout_seconds: float,
        initial_backoff_seconds: float,
        max_backoff_seconds: float,
        backoff_multiplier: float = 2.0,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._client = client
        self._table = table
        self._max_attempts = max_attempts
        self._attempt_timeout = attempt_timeout_seconds
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._backoff_multiplier = backoff_multiplier

    @property
    def table(self) -> TableRef:
        return self._table

    async def flush(self, batch: Batch) -> FlushReport:
        _log(
            "batch_flush_started",
            batch_id=batch.batch_id,
            rows=batch.row_count,
            bytes=batch.byte_count,
            trigger=batch.trigger,
            state=BATCH_STATE.ASSEMBLED,
            table=str(self._table),
        )
        try:
            outcomes, attempts = await self._submit(batch)
        except TransportError as exc:
            requeued = await self._requeue_unresolved(batch)
            _warn(
                "batch_flush_failed",
                batch_id=batch.batch_id,
                table=str(self._table),
                attempts=self._max_attempts,
                requeued=requeued,
                state=BATCH_STATE.FAILED,
                error=str(exc),
            )
            return FlushReport(
                batch_id=batch.batch_id,
                state=BATCH_STATE.FAILED,
                outcomes=(),
                attempts=self._max_attempts,
                acked=0,
                requeued=requeued,
            )
        except AuthError as exc:
            requeued = await self._requeue_unresolved(batch)
            _warn(
                "batch_flush_unauthorized",
                batch_id=batch.batch_id,
                table=str(self._table),
                requeued=requeued,
                state=BATCH_STATE.FAILED,
                error=str(exc),
            )
            raise
        except (asyncio.CancelledError, Exception):
            await self._requeue_unresolved(batch)
            raise

        try:
            acked, requeued = await self._settle(batch, outcomes)
        except (asyncio.CancelledError, Exception):
            await self._requeue_unresolved(batch)
            raise

        if all(outcome.accepted for outcome in outcomes):
            state = BATCH_STATE.SUCCEEDED
        else:
            state = BATCH_STATE.PARTIALLY_SUCCEEDED
        _log(
            "batch_flush_completed",
            batch_id=batch.batch_id,
            table=str(self._table),
            rows=batch.row_count,
            attempts=attempts,
            acked=acked,
            requeued=requeued,
            state=state,
        )
        return FlushReport(
            batch_id=batch.batch_id,
            state=state,
            outcomes=tuple(outcomes),
            attempts=attempts,
            acked=acked,
            requeued=requeued,
        )

    async def _submit(self, batch: Batch) -> tuple[list[RowOutcome], int]:
        rows = [entry.record.to_row() for entry in batch.entries]
        row_ids = [entry.delivery.message_id for entry in batch.entries]
        try:
            return await self._insert(batch.batch_id, rows, row_ids)
        except RejectedRequestError as exc:
            _warn(
                "batch_request_rejected",
                batch_id=batch.batch_id,
                table=str(self._table),
                rows=len(rows),
                reason=exc.reason,
                error=str(exc),
            )
            if len(rows) == 1:
                return [RowOutcome.reject(exc.reason, str(exc), permanent=True)], 1
        return await self._isolate(batch.batch_id, rows, row_ids)

    async def _isolate(
        self,
        batch_id: int,
        rows: list[dict[str, Any]],
        row_ids: list[str | None],
    ) -> tuple[list[RowOutcome], int]:
        """Insert rows one by one so a refused row cannot hold back the rest of its batch."""
        outcomes: list[RowOutcome] = []
        attempts = 1
        for row, row_id in zip(rows, row_ids):
            try:
                row_outcomes, row_attempts = await self._insert(batch_id, [row], [row_id])
            except RejectedRequestError as exc:
                outcomes.append(RowOutcome.reject(exc.reason, str(exc), permanent=True))
                attempts += 1
            except TransportError as exc:
                outcomes.append(RowOutcome.reject("transport", str(exc), permanent=False))
                attempts += self._max_attempts
            else:
                outcomes.extend(row_outcomes)
                attempts += row_attempts
        return outcomes, attempts

    async def _insert(
        self,
        batch_id: int,
        rows: list[dict[str, Any]],
        row_ids: list[str | None],
    ) -> tuple[list[RowOutcome], int]:
        last_error: TransportError | None = None
        async for attempt, delay in exponential_backoff(
            self._initial_backoff,
            self._max_backoff,
            self._backoff_multiplier,
            self._max_attempts,
        ):
            state = BATCH_STATE.SUBMITTING if attempt == 1 else BATCH_STATE.RETRYING
            _log("insert_attempt", batch_id=batch_id, attempt=attempt, delay=delay, state=state)
            try:
                outcomes = await asyncio.wait_for(
                    self._client.insert(
                        self._table,
                        rows,
                        row_ids=row_ids,
                        timeout=self._attempt_timeout,
                    ),
                    timeout=self._attempt_timeout,
                )
            except asyncio.TimeoutError:
                last_error = TransportError(
                    f"insert into {self._table} exceeded {self._attempt_timeout}s deadline"
                )
            except TransportError as exc:
                last_error = exc
            else:
                if len(outcomes) != len(rows):
                    raise RuntimeError(
                        f"warehouse returned {len(outcomes)} outcomes for {len(rows)} rows"
                    )
                return outcomes, attempt
            _warn(
                "insert_attempt_failed",
                batch_id=batch_id,
                attempt=attempt,
                max_attempts=self._max_attempts,
                error=str(last_error),
            )
        raise last_error or TransportError(f"insert into {self._table} failed")

    async def _settle(self, batch: Batch, outcomes: list[RowOutcome]) -> tuple[int, int]:
        acked = 0
        requeued = 0
        for index, (entry, outcome) in enumerate(zip(batch.entries, outcomes)):
            if outcome.accepted:
                await entry.delivery.ack()
                acked += 1
                continue

            _warn(
                "row_rejected",
                batch_id=batch.batch_id,
                table=str(self._table),
                row_index=index,
                message_id=entry.delivery.message_id,
                row=entry.record.to_row(),
                reason=outcome.reason,
                detail=outcome.message,
                permanent=outcome.permanent,
            )
            if outcome.permanent:
                await entry.delivery.ack()
                acked += 1
            else:
                await entry.delivery.requeue()
                requeued += 1
        return acked, requeued

    async def _requeue_unresolved(self, batch: Batch) -> int:
        requeued = 0
        for entry in batch.entries:
            if not entry.delivery.resolved:
                await entry.delivery.requeue()
                requeued += 1
        return requeued
