"""Warehouse client factory: builds a WarehouseClient from settings (no provider logic in composition)."""
from __future__ import annotations

from google.cloud import bigquery

from queue_to_bigquery.app.config.settings import Settings
from queue_to_bigquery.app.infrastructure.warehouse.bigquery.bigquery_client import BigQueryWarehouseClient
from queue_to_bigquery.app.infrastructure.warehouse.bigquery.credentials import load_credentials
from queue_to_bigquery.app.ports.warehouse_client import WarehouseClient


def create_warehouse_client(settings: Settings) -> WarehouseClient:
    backend = settings.warehouse_backend.strip().lower()

    if backend == "bigquery":
        credentials = load_credentials(settings.credentials_file)
        client = bigquery.Client(project=settings.warehouse_project, credentials=credentials)
        return BigQueryWarehouseClient(
            client,
            skip_invalid_rows=settings.skip_invalid_rows,
            ignore_unknown_values=settings.ignore_unknown_values,
        )

    raise ValueError(f"Unsupported warehouse backend: {backend}")
