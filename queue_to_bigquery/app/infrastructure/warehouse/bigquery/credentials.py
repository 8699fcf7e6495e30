"""Service-account credential loading for BigQuery."""
from __future__ import annotations

from google.oauth2 import service_account

from queue_to_bigquery.app.domain.errors import CredentialsError

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"


def load_credentials(path: str) -> service_account.Credentials:
    """Load a service-account key file scoped for BigQuery."""
    try:
        return service_account.Credentials.from_service_account_file(
            path,
            scopes=[BIGQUERY_SCOPE],
        )
    except (OSError, ValueError) as exc:
        raise CredentialsError(f"cannot load credentials from {path}: {exc}") from exc
