"""Domain models."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from batcher.app.domain.errors import ProcessingError

ALLOWED_METHODS = frozenset({"POST", "PATCH", "PUT"})


class SupportsProcessingError(Protocol):
    """Anything the engine can finalize: it only reads and writes processing_error."""

    processing_error: ProcessingError | None


@dataclass
class ProcessedItem:
    """Default result record; callers may use their own type with a processing_error slot."""

    title: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    processing_error: ProcessingError | None = None

    @property
    def succeeded(self) -> bool:
        return self.processing_error is None


# (item, response_json, status_code, status_text, operation_id) -> None; mutates item.
ResponseParser = Callable[[Any, Any, int, str, str], None]


@dataclass
class Operation:
    """One logical API call inside a batch. `id` doubles as the correlation token."""

    id: str
    path: str
    body: Any
    processed_item: SupportsProcessingError
    method: str = "POST"
    retries_attempted: int = 0

    def __post_init__(self) -> None:
        if not self.id or any(ch.isspace() or ch in "<>" for ch in self.id):
            raise ValueError(f"operation id must be a non-empty token without whitespace or angle brackets: {self.id!r}")
        self.method = self.method.upper()
        if self.method not in ALLOWED_METHODS:
            raise ValueError(f"unsupported batch method: {self.method}")
        if not self.path.startswith("/"):
            raise ValueError(f"operation path must be absolute: {self.path!r}")

    @classmethod
    def create(
        cls,
        path: str,
        body: Any,
        processed_item: SupportsProcessingError,
        *,
        method: str = "POST",
    ) -> "Operation":
        return cls(id=uuid.uuid4().hex, path=path, body=body, processed_item=processed_item, method=method)

    @property
    def title(self) -> str:
        title = getattr(self.processed_item, "title", None)
        return f'"{title[:30]}"' if title else "(No Title)"


@dataclass(frozen=True)
class SingleBatchResult:
    """Partition of one dispatched batch: every operation lands in exactly one list."""

    attempted: list[Operation]
    to_retry: list[Operation]


DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    """Immutable retry settings for one run."""

    max_retries: int = 3
    initial_delay_ms: float = 1500
    backoff_factor: float = 2.0
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES
    jitter_max_ms: float = 1000

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.jitter_max_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        object.__setattr__(self, "retryable_status_codes", frozenset(self.retryable_status_codes))
