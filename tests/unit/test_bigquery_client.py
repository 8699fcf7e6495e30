"""Unit tests for the BigQuery adapter: error mapping and row outcome alignment."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest
import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions

from queue_to_bigquery.app.domain.errors import (
    AuthError,
    CredentialsError,
    RejectedRequestError,
    StartupError,
    TransportError,
)
from queue_to_bigquery.app.infrastructure.warehouse.bigquery.bigquery_client import (
    BigQueryWarehouseClient,
    align_row_errors,
)
from queue_to_bigquery.app.infrastructure.warehouse.bigquery.credentials import load_credentials
from tests.fakes import TABLE


class FakeBigQueryClient:
    """Stands in for google.cloud.bigquery.Client; records calls."""

    def __init__(self, *, errors: list[dict[str, Any]] | None = None, raise_exc: Exception | None = None) -> None:
        self._errors = errors or []
        self._raise = raise_exc
        self.insert_calls: list[tuple[tuple, dict[str, Any]]] = []
        self.get_table_calls: list[str] = []
        self.closed = False

    def insert_rows_json(self, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        self.insert_calls.append((args, kwargs))
        if self._raise is not None:
            raise self._raise
        return self._errors

    def get_table(self, table: str) -> object:
        self.get_table_calls.append(table)
        if self._raise is not None:
            raise self._raise
        return object()

    def close(self) -> None:
        self.closed = True


def _insert(client: BigQueryWarehouseClient, rows: list[dict[str, Any]], row_ids: list[str | None]):
    return asyncio.run(client.insert(TABLE, rows, row_ids=row_ids, timeout=7.0))


def test_insert_sends_one_request_with_ids_and_no_client_retry():
    fake = FakeBigQueryClient()
    client = BigQueryWarehouseClient(fake, skip_invalid_rows=True, ignore_unknown_values=True)

    outcomes = _insert(client, [{"a": 1}, {"a": 2}], ["m-1", "m-2"])

    assert [o.accepted for o in outcomes] == [True, True]
    assert len(fake.insert_calls) == 1
    args, kwargs = fake.insert_calls[0]
    assert args == ("proj.events.clicks", [{"a": 1}, {"a": 2}])
    assert kwargs["row_ids"] == ["m-1", "m-2"]
    assert kwargs["retry"] is None
    assert kwargs["timeout"] == 7.0
    assert kwargs["skip_invalid_rows"] is True
    assert kwargs["ignore_unknown_values"] is True


def test_missing_message_ids_get_generated_insert_ids():
    fake = FakeBigQueryClient()

    _insert(BigQueryWarehouseClient(fake), [{"a": 1}, {"a": 2}], ["m-1", None])

    row_ids = fake.insert_calls[0][1]["row_ids"]
    assert row_ids[0] == "m-1"
    assert isinstance(row_ids[1], str) and len(row_ids[1]) == 32


def test_row_errors_are_aligned_and_classified():
    fake = FakeBigQueryClient(
        errors=[
            {"index": 1, "errors": [{"reason": "invalid", "location": "nme", "message": "no such field: nme."}]},
            {"index": 2, "errors": [{"reason": "stopped", "message": ""}]},
        ]
    )

    outcomes = _insert(BigQueryWarehouseClient(fake), [{"a": 1}, {"nme": 2}, {"a": 3}], ["1", "2", "3"])

    assert outcomes[0].accepted is True
    assert outcomes[1].accepted is False
    assert outcomes[1].permanent is True
    assert outcomes[1].reason == "invalid"
    assert outcomes[1].message == "no such field: nme."
    assert outcomes[2].accepted is False
    assert outcomes[2].permanent is False
    assert outcomes[2].reason == "stopped"


def test_align_row_errors_ignores_out_of_range_indexes():
    outcomes = align_row_errors(1, [{"index": 5, "errors": [{"reason": "invalid"}]}])

    assert [o.accepted for o in outcomes] == [True]


@pytest.mark.parametrize(
    "exc,expected",
    [
        (api_exceptions.Unauthorized("bad token"), AuthError),
        (api_exceptions.Forbidden("access denied", errors=[{"reason": "accessDenied"}]), AuthError),
        (api_exceptions.Forbidden("slow down", errors=[{"reason": "rateLimitExceeded"}]), TransportError),
        (auth_exceptions.RefreshError("invalid_grant"), AuthError),
        (api_exceptions.ServiceUnavailable("backend down"), TransportError),
        (api_exceptions.InternalServerError("oops"), TransportError),
        (api_exceptions.NotFound("table gone"), TransportError),
        (api_exceptions.TooManyRequests("slow down"), TransportError),
        (api_exceptions.BadRequest("Invalid JSON payload received"), RejectedRequestError),
        (api_exceptions.RequestEntityTooLarge("request too large"), RejectedRequestError),
        (api_exceptions.Conflict("already exists"), RejectedRequestError),
        (requests.exceptions.ConnectionError("reset by peer"), TransportError),
        (auth_exceptions.TransportError("dns failure"), TransportError),
    ],
)
def test_insert_errors_map_to_pipeline_taxonomy(exc, expected):
    client = BigQueryWarehouseClient(FakeBigQueryClient(raise_exc=exc))

    with pytest.raises(expected):
        _insert(client, [{"a": 1}], ["1"])


def test_verify_reports_missing_table_as_startup_error():
    fake = FakeBigQueryClient(raise_exc=api_exceptions.NotFound("Not found: Table proj:events.clicks"))

    with pytest.raises(StartupError, match="not found"):
        asyncio.run(BigQueryWarehouseClient(fake).verify(TABLE))
    assert fake.get_table_calls == ["proj.events.clicks"]


def test_refused_request_carries_provider_reason():
    exc = api_exceptions.BadRequest("Invalid JSON payload received", errors=[{"reason": "invalid"}])
    client = BigQueryWarehouseClient(FakeBigQueryClient(raise_exc=exc))

    with pytest.raises(RejectedRequestError) as excinfo:
        _insert(client, [{"a": 1}], ["1"])

    assert excinfo.value.reason == "invalid"


def test_align_row_errors_skips_entries_without_index():
    outcomes = align_row_errors(2, [{"errors": [{"reason": "invalid"}]}, {"index": 1, "errors": [{"reason": "stopped"}]}])

    assert [o.accepted for o in outcomes] == [True, False]
    assert outcomes[1].reason == "stopped"


def test_verify_reports_bad_request_as_startup_error():
    fake = FakeBigQueryClient(raise_exc=api_exceptions.BadRequest("Invalid table name"))

    with pytest.raises(StartupError, match="cannot verify"):
        asyncio.run(BigQueryWarehouseClient(fake).verify(TABLE))


def test_verify_reports_unauthorized_as_auth_error():
    fake = FakeBigQueryClient(raise_exc=api_exceptions.Unauthorized("expired"))

    with pytest.raises(AuthError):
        asyncio.run(BigQueryWarehouseClient(fake).verify(TABLE))


def test_close_closes_underlying_client():
    fake = FakeBigQueryClient()

    asyncio.run(BigQueryWarehouseClient(fake).close())

    assert fake.closed is True


def test_unreadable_credentials_file_raises_credentials_error(tmp_path):
    with pytest.raises(CredentialsError, match="cannot load credentials"):
        load_credentials(str(tmp_path / "missing.json"))

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(CredentialsError):
        load_credentials(str(broken))
