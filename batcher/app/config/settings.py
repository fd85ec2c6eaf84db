from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from batcher.app.constants import (
    GOOGLE_CLASSROOM_BATCH_ENDPOINT_URL,
    GOOGLE_CLASSROOM_MAX_OPERATIONS_PER_BATCH,
)
from batcher.app.domain.models import RetryConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    batch_endpoint_url: str = Field(
        GOOGLE_CLASSROOM_BATCH_ENDPOINT_URL,
        validation_alias="BATCH_ENDPOINT_URL",
    )
    max_operations_per_batch: int = Field(
        GOOGLE_CLASSROOM_MAX_OPERATIONS_PER_BATCH,
        validation_alias="MAX_OPERATIONS_PER_BATCH",
    )

    # Applies to both layers: extra transport attempts per dispatch, and item re-enqueues per operation.
    max_retries: int = Field(3, validation_alias="MAX_RETRIES")
    initial_delay_ms: float = Field(1500, validation_alias="INITIAL_DELAY_MS")
    backoff_factor: float = Field(2.0, validation_alias="BACKOFF_FACTOR")
    retryable_status_codes: str = Field("429,500,503,504", validation_alias="RETRYABLE_STATUS_CODES")
    jitter_max_ms: float = Field(1000, validation_alias="JITTER_MAX_MS")

    request_connect_timeout_seconds: float = Field(10.0, validation_alias="REQUEST_CONNECT_TIMEOUT_SECONDS")
    request_read_timeout_seconds: float = Field(60.0, validation_alias="REQUEST_READ_TIMEOUT_SECONDS")
    poll_interval_seconds: float = Field(0.2, validation_alias="POLL_INTERVAL_SECONDS")
    run_deadline_seconds: float | None = Field(None, validation_alias="RUN_DEADLINE_SECONDS")

    access_token: str = Field("", validation_alias="GOOGLE_ACCESS_TOKEN")

    @field_validator("retryable_status_codes")
    @classmethod
    def _check_status_codes(cls, value: str) -> str:
        for token in value.split(","):
            token = token.strip()
            if token and not token.isdigit():
                raise ValueError(f"invalid status code in RETRYABLE_STATUS_CODES: {token!r}")
        return value

    @field_validator("max_operations_per_batch")
    @classmethod
    def _check_batch_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_OPERATIONS_PER_BATCH must be at least 1")
        return value

    def retry_config(self) -> RetryConfig:
        codes = frozenset(
            int(token) for token in self.retryable_status_codes.split(",") if token.strip()
        )
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            backoff_factor=self.backoff_factor,
            retryable_status_codes=codes,
            jitter_max_ms=self.jitter_max_ms,
        )
