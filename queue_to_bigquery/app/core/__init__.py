"""Service-wide identifiers shared by logging and broker connection naming."""
from __future__ import annotations

SERVICE_NAME = "queue-to-bigquery"
VERSION = "0.1.0"
USER_AGENT = f"{SERVICE_NAME}/{VERSION}"
