from __future__ import annotations

import pytest
from pydantic import ValidationError

from batcher.app.config.settings import Settings
from batcher.app.constants import GOOGLE_CLASSROOM_BATCH_ENDPOINT_URL, GOOGLE_DRIVE_BATCH_ENDPOINT_URL


def _clear_env(monkeypatch) -> None:  # noqa: ANN001
    for name in (
        "BATCH_ENDPOINT_URL",
        "MAX_OPERATIONS_PER_BATCH",
        "MAX_RETRIES",
        "INITIAL_DELAY_MS",
        "BACKOFF_FACTOR",
        "RETRYABLE_STATUS_CODES",
        "JITTER_MAX_MS",
        "RUN_DEADLINE_SECONDS",
        "GOOGLE_ACCESS_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_target_classroom(monkeypatch):
    _clear_env(monkeypatch)
    settings = Settings(_env_file=None)

    assert settings.batch_endpoint_url == GOOGLE_CLASSROOM_BATCH_ENDPOINT_URL
    assert settings.max_operations_per_batch == 50
    assert settings.access_token == ""
    assert settings.run_deadline_seconds is None

    config = settings.retry_config()
    assert config.max_retries == 3
    assert config.initial_delay_ms == 1500
    assert config.backoff_factor == 2.0
    assert config.retryable_status_codes == frozenset({429, 500, 503, 504})


def test_environment_overrides(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("BATCH_ENDPOINT_URL", GOOGLE_DRIVE_BATCH_ENDPOINT_URL)
    monkeypatch.setenv("MAX_OPERATIONS_PER_BATCH", "100")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("RETRYABLE_STATUS_CODES", "429, 503")
    monkeypatch.setenv("RUN_DEADLINE_SECONDS", "30")
    monkeypatch.setenv("GOOGLE_ACCESS_TOKEN", "ya29.token")

    settings = Settings(_env_file=None)

    assert settings.max_operations_per_batch == 100
    assert settings.run_deadline_seconds == 30
    assert settings.access_token == "ya29.token"
    config = settings.retry_config()
    assert config.max_retries == 5
    assert config.retryable_status_codes == frozenset({429, 503})


def test_invalid_values_are_rejected(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("RETRYABLE_STATUS_CODES", "429,abc")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)

    monkeypatch.setenv("RETRYABLE_STATUS_CODES", "429")
    monkeypatch.setenv("MAX_OPERATIONS_PER_BATCH", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
