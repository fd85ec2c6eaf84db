"""Retry policy: exponential backoff with bounded jitter.

Shared by the transport layer (whole-batch POST) and the item layer (per-operation
re-enqueue). delay(n) = initial_delay_ms * backoff_factor ** (n - 1) + U[0, jitter_max_ms).
"""
from __future__ import annotations

import random
from typing import Callable

from batcher.app.domain.models import Operation, RetryConfig
from batcher.app.ports.http_client import HttpClientError, HttpClientTimeoutError


class RetryPolicy:
    def __init__(self, config: RetryConfig, *, rng: Callable[[], float] = random.random) -> None:
        self._config = config
        self._rng = rng

    @property
    def config(self) -> RetryConfig:
        return self._config

    def base_delay_ms(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), without jitter."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return self._config.initial_delay_ms * self._config.backoff_factor ** (attempt - 1)

    def delay_ms(self, attempt: int) -> float:
        return self.base_delay_ms(attempt) + self._rng() * self._config.jitter_max_ms

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000.0

    def is_retryable_status(self, status_code: int | None) -> bool:
        return status_code is not None and status_code in self._config.retryable_status_codes

    def should_retry(self, status_code: int | None, attempts_made: int) -> bool:
        return self.is_retryable_status(status_code) and attempts_made < self._config.max_retries

    def should_retry_exception(self, exc: BaseException, attempts_made: int) -> bool:
        """Transport layer: timeouts and network errors retry; HTTP errors follow the status rule."""
        if attempts_made >= self._config.max_retries:
            return False
        if isinstance(exc, HttpClientTimeoutError):
            return True
        if isinstance(exc, HttpClientError):
            return exc.status_code is None or self.is_retryable_status(exc.status_code)
        return False

    def should_retry_item(self, operation: Operation) -> bool:
        """Item layer: only a recorded statusCode makes an operation eligible."""
        error = operation.processed_item.processing_error
        if error is None:
            return False
        return self.should_retry(error.status_code, operation.retries_attempted)
