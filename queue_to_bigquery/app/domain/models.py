"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from queue_to_bigquery.app.domain.delivery import Delivery


@dataclass(frozen=True)
class TableRef:
    """Fully qualified warehouse table."""

    project: str
    dataset: str
    table: str

    def __str__(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table}"


@dataclass(frozen=True)
class Record:
    """Decoded message payload (value object). Field values are JSON values."""

    fields: Mapping[str, Any]

    def __post_init__(self) -> None:
        if not isinstance(self.fields, Mapping):
            raise TypeError("record fields must be a mapping")
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def to_row(self) -> dict[str, Any]:
        """Plain dict for the insert request."""
        return dict(self.fields)


@dataclass(frozen=True)
class BatchEntry:
    record: Record
    delivery: "Delivery"


@dataclass
class Batch:
    """Ordered (record, delivery) pairs collected for one insert call."""

    batch_id: int
    created_at: float
    entries: list[BatchEntry] = field(default_factory=list)
    oldest_timestamp: float | None = None
    byte_count: int = 0
    trigger: str | None = None

    @property
    def row_count(self) -> int:
        return len(self.entries)

    def append(self, entry: BatchEntry, size: int, now: float) -> None:
        if self.oldest_timestamp is None:
            self.oldest_timestamp = now
        self.entries.append(entry)
        self.byte_count += size


@dataclass(frozen=True)
class RowOutcome:
    """Per-row insert result, positionally aligned with the batch rows."""

    accepted: bool
    reason: str | None = None
    message: str | None = None
    permanent: bool = False

    @staticmethod
    def accept() -> "RowOutcome":
        return RowOutcome(accepted=True)

    @staticmethod
    def reject(reason: str, message: str = "", *, permanent: bool) -> "RowOutcome":
        return RowOutcome(accepted=False, reason=reason, message=message, permanent=permanent)


@dataclass(frozen=True)
class FlushReport:
    batch_id: int
    state: str
    outcomes: tuple[RowOutcome, ...]
    attempts: int
    acked: int
    requeued: int
