"""Warehouse client port: contract for batched row inserts.

The application depends on this port; infrastructure (BigQuery) implements it
and maps provider errors onto TransportError / AuthError.
"""
from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from queue_to_bigquery.app.domain.models import RowOutcome, TableRef


@runtime_checkable
class WarehouseClient(Protocol):
    async def verify(self, table: TableRef) -> None:
        """Check credentials and that the table exists. Raise AuthError or StartupError."""
        ...

    async def insert(
        self,
        table: TableRef,
        rows: Sequence[Mapping[str, Any]],
        *,
        row_ids: Sequence[str | None],
        timeout: float,
    ) -> list[RowOutcome]:
        """Insert rows in one request.

        Returns one RowOutcome per row, in input order. Raises TransportError for
        retryable request failures, RejectedRequestError when the request content
        itself is refused and AuthError for credential failures.
        """
        ...

    async def close(self) -> None:
        """Release resources. No-op allowed if nothing to close."""
        ...
