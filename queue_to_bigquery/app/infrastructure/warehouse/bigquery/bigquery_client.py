"""Concrete WarehouseClient implementation using google-cloud-bigquery streaming inserts.

The BigQuery client is blocking, so every call runs in a worker thread via
asyncio.to_thread. Client-side retries are disabled (retry=None); retrying is
the SinkWriter's job.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Iterable, Mapping, Sequence

import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import bigquery

from queue_to_bigquery.app.domain.errors import AuthError, RejectedRequestError, StartupError, TransportError
from queue_to_bigquery.app.domain.models import RowOutcome, TableRef

# Row error reasons that redelivering the same row cannot fix.
PERMANENT_ROW_REASONS = frozenset({"invalid"})
# 403 reasons that are quota throttling rather than a credential problem.
THROTTLING_REASONS = frozenset({"rateLimitExceeded", "quotaExceeded"})
# 4xx responses that stay retryable (missing table, 429 throttling).
RETRYABLE_CLIENT_ERRORS = (api_exceptions.NotFound, api_exceptions.TooManyRequests)


def _error_reasons(exc: api_exceptions.GoogleAPICallError) -> set[str]:
    reasons: set[str] = set()
    for error in getattr(exc, "errors", None) or []:
        if isinstance(error, Mapping) and error.get("reason"):
            reasons.add(str(error["reason"]))
    return reasons


def _map_error(exc: Exception, table: TableRef) -> Exception:
    """Translate a provider exception into the pipeline taxonomy."""
    if isinstance(exc, api_exceptions.Forbidden) and _error_reasons(exc) & THROTTLING_REASONS:
        return TransportError(f"bigquery throttled request for {table}: {exc}")
    if isinstance(exc, (api_exceptions.Unauthorized, api_exceptions.Forbidden)):
        return AuthError(f"bigquery denied access to {table}: {exc}")
    if isinstance(exc, auth_exceptions.RefreshError):
        return AuthError(f"credential refresh failed: {exc}")
    if isinstance(exc, api_exceptions.ClientError) and not isinstance(exc, RETRYABLE_CLIENT_ERRORS):
        reason = ",".join(sorted(_error_reasons(exc))) or "invalidRequest"
        return RejectedRequestError(f"bigquery rejected request for {table}: {exc}", reason=reason)
    return TransportError(f"bigquery request for {table} failed: {exc}")


_TRANSPORT_EXCEPTIONS = (
    api_exceptions.GoogleAPIError,
    auth_exceptions.GoogleAuthError,
    requests.exceptions.RequestException,
    ConnectionError,
    TimeoutError,
)


def align_row_errors(row_count: int, errors: Iterable[Mapping[str, Any]]) -> list[RowOutcome]:
    """Turn BigQuery's sparse ``[{"index": i, "errors": [...]}]`` list into one outcome per row."""
    outcomes = [RowOutcome.accept() for _ in range(row_count)]
    for item in errors:
        index = item.get("index")
        if index is None:
            continue
        index = int(index)
        if not 0 <= index < row_count:
            continue
        row_errors = [e for e in item.get("errors") or [] if isinstance(e, Mapping)]
        reasons = [str(e.get("reason") or "unknown") for e in row_errors] or ["unknown"]
        messages = [str(e.get("message")) for e in row_errors if e.get("message")]
        outcomes[index] = RowOutcome.reject(
            ",".join(sorted(set(reasons))),
            "; ".join(messages),
            permanent=any(reason in PERMANENT_ROW_REASONS for reason in reasons),
        )
    return outcomes


class BigQueryWarehouseClient:
    """WarehouseClient implementation over google.cloud.bigquery.Client."""

    def __init__(
        self,
        client: bigquery.Client,
        *,
        skip_invalid_rows: bool = False,
        ignore_unknown_values: bool = False,
    ) -> None:
        self._client = client
        self._skip_invalid_rows = skip_invalid_rows
        self._ignore_unknown_values = ignore_unknown_values

    async def verify(self, table: TableRef) -> None:
        try:
            await asyncio.to_thread(self._client.get_table, str(table))
        except api_exceptions.NotFound as exc:
            raise StartupError(f"table {table} not found: {exc}") from exc
        except _TRANSPORT_EXCEPTIONS as exc:
            mapped = _map_error(exc, table)
            if isinstance(mapped, RejectedRequestError):
                raise StartupError(f"cannot verify table {table}: {exc}") from exc
            raise mapped from exc

    async def insert(
        self,
        table: TableRef,
        rows: Sequence[Mapping[str, Any]],
        *,
        row_ids: Sequence[str | None],
        timeout: float,
    ) -> list[RowOutcome]:
        # Rows without a publisher id get a fresh one; only stable ids let BigQuery dedupe redeliveries.
        insert_ids = [row_id or uuid.uuid4().hex for row_id in row_ids]
        try:
            errors = await asyncio.to_thread(
                self._client.insert_rows_json,
                str(table),
                [dict(row) for row in rows],
                row_ids=insert_ids,
                skip_invalid_rows=self._skip_invalid_rows,
                ignore_unknown_values=self._ignore_unknown_values,
                retry=None,
                timeout=timeout,
            )
        except _TRANSPORT_EXCEPTIONS as exc:
            raise _map_error(exc, table) from exc
        return align_row_errors(len(rows), errors or [])

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
