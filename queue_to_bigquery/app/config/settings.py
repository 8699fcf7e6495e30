from typing import Annotated

from loguru import logger
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    topic: str = Field(..., min_length=1, validation_alias="TOPIC")
    channel: str = Field(..., min_length=1, validation_alias="CHANNEL")

    # Direct broker addresses and discovery addresses are mutually exclusive.
    broker_addresses: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="BROKER_ADDRESSES",
    )
    discovery_addresses: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="DISCOVERY_ADDRESSES",
    )
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    queue_max_length: int | None = Field(None, gt=0, validation_alias="QUEUE_MAX_LENGTH")

    max_in_flight: int = Field(200, gt=0, validation_alias="MAX_IN_FLIGHT")

    warehouse_project: str = Field(..., min_length=1, validation_alias="WAREHOUSE_PROJECT")
    warehouse_dataset: str = Field(..., min_length=1, validation_alias="WAREHOUSE_DATASET")
    warehouse_table: str = Field(..., min_length=1, validation_alias="WAREHOUSE_TABLE")
    credentials_file: str = Field(..., min_length=1, validation_alias="CREDENTIALS_FILE")

    max_rows: int = Field(100, gt=0, validation_alias="MAX_ROWS")
    # 0 disables the byte threshold.
    max_batch_bytes: int = Field(5_000_000, ge=0, validation_alias="MAX_BATCH_BYTES")
    time_before_flush_seconds: float = Field(30.0, gt=0, validation_alias="TIME_BEFORE_FLUSH_SECONDS")
    flush_check_interval_seconds: float | None = Field(
        None,
        gt=0,
        validation_alias="FLUSH_CHECK_INTERVAL_SECONDS",
    )

    # Insert attempts per batch, the first one included.
    insert_max_attempts: int = Field(5, gt=0, validation_alias="INSERT_MAX_ATTEMPTS")
    insert_timeout_seconds: float = Field(30.0, gt=0, validation_alias="INSERT_TIMEOUT_SECONDS")
    skip_invalid_rows: bool = Field(False, validation_alias="SKIP_INVALID_ROWS")
    ignore_unknown_values: bool = Field(False, validation_alias="IGNORE_UNKNOWN_VALUES")

    consumer_backend: str = Field("rabbitmq", validation_alias="CONSUMER_BACKEND")
    warehouse_backend: str = Field("bigquery", validation_alias="WAREHOUSE_BACKEND")

    initial_backoff_seconds: float = Field(0.5, ge=0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, ge=0, validation_alias="MAX_BACKOFF_SECONDS")
    backoff_multiplier: float = Field(2.0, ge=1.0, validation_alias="BACKOFF_MULTIPLIER")
    max_connection_attempts: int = Field(5, gt=0, validation_alias="MAX_CONNECTION_ATTEMPTS")
    discovery_timeout_seconds: float = Field(5.0, gt=0, validation_alias="DISCOVERY_TIMEOUT_SECONDS")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(True, validation_alias="LOG_JSON")

    @field_validator("broker_addresses", "discovery_addresses", mode="before")
    @classmethod
    def _split_addresses(cls, value: object) -> object:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def _check_broker_source(self) -> "Settings":
        if not self.broker_addresses and not self.discovery_addresses:
            raise ValueError("BROKER_ADDRESSES or DISCOVERY_ADDRESSES is required")
        if self.broker_addresses and self.discovery_addresses:
            raise ValueError("use BROKER_ADDRESSES or DISCOVERY_ADDRESSES, not both")
        if self.max_rows > self.max_in_flight:
            logger.warning(
                "MAX_ROWS ({}) exceeds MAX_IN_FLIGHT ({}); batches will only flush on time",
                self.max_rows,
                self.max_in_flight,
            )
        return self

    @property
    def flush_check_interval(self) -> float:
        if self.flush_check_interval_seconds is not None:
            return self.flush_check_interval_seconds
        return self.time_before_flush_seconds / 4
