from __future__ import annotations

import pytest

SETTINGS_ENV = (
    "TOPIC",
    "CHANNEL",
    "BROKER_ADDRESSES",
    "DISCOVERY_ADDRESSES",
    "MAX_IN_FLIGHT",
    "WAREHOUSE_PROJECT",
    "WAREHOUSE_DATASET",
    "WAREHOUSE_TABLE",
    "CREDENTIALS_FILE",
    "MAX_ROWS",
    "TIME_BEFORE_FLUSH_SECONDS",
    "FLUSH_CHECK_INTERVAL_SECONDS",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> pytest.MonkeyPatch:  # noqa: ANN001
    """No pipeline variables in the environment and no .env in the working directory."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture()
def base_settings_env() -> dict[str, str]:
    return {
        "TOPIC": "clicks",
        "CHANNEL": "bigquery",
        "BROKER_ADDRESSES": "rabbit-1:5672",
        "WAREHOUSE_PROJECT": "proj",
        "WAREHOUSE_DATASET": "events",
        "WAREHOUSE_TABLE": "clicks",
        "CREDENTIALS_FILE": "/secrets/sa.json",
    }
