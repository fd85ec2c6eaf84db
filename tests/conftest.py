from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable

import pytest

from batcher.app.domain.models import Operation, ProcessedItem, RetryConfig
from batcher.app.domain.retry_policy import RetryPolicy
from batcher.app.ports.http_client import HttpClientError, RequestTimeout

RESPONSE_BOUNDARY = "batch_test_response_boundary"
_SENT_ID_RE = re.compile(r"^Content-ID: (\S+)\r$", re.MULTILINE)


class FakeResponse:
    """Implements HttpResponse for tests."""

    def __init__(
        self,
        text: str,
        *,
        status_code: int = 200,
        content_type: str | None = f"multipart/mixed; boundary={RESPONSE_BOUNDARY}",
        reason: str = "OK",
    ) -> None:
        self.text = text
        self.status_code = status_code
        self.headers: dict[str, str] = {}
        if content_type is not None:
            self.headers["Content-Type"] = content_type
        self.url = "https://example.test/batch"
        self.elapsed_seconds = 0.01
        self._reason = reason

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise HttpClientError(
                f"http status {self.status_code} for {self.url}",
                status_code=self.status_code,
                reason=self._reason,
                body=self.text,
            )


class FakeHttpClient:
    """Implements AbstractHttpClient; `responder(call_index, body_text)` returns a response or raises."""

    def __init__(self, responder: Callable[[int, str], FakeResponse]) -> None:
        self._responder = responder
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    async def post(
        self,
        url: str,
        *,
        content: bytes,
        timeout: RequestTimeout,
        headers: dict[str, str] | None = None,
    ) -> FakeResponse:
        body = content.decode("utf-8")
        self.requests.append({"url": url, "body": body, "headers": dict(headers or {}), "timeout": timeout})
        return self._responder(len(self.requests) - 1, body)

    async def close(self) -> None:
        self.closed = True

    def sent_ids(self, index: int) -> list[str]:
        return sent_operation_ids(self.requests[index]["body"])


def sent_operation_ids(body: str) -> list[str]:
    return _SENT_ID_RE.findall(body)


def sub_response(
    content_id: str,
    status_code: int,
    payload: Any = None,
    *,
    reason: str | None = None,
    raw_body: str | None = None,
) -> str:
    """One part of a Google-style batch response."""
    reason = reason or {200: "OK", 404: "Not Found", 429: "Too Many Requests", 500: "Internal Server Error"}.get(status_code, "Status")
    body = raw_body if raw_body is not None else json.dumps(payload if payload is not None else {})
    return (
        f"--{RESPONSE_BOUNDARY}\r\n"
        "Content-Type: application/http\r\n"
        f"Content-ID: <response-{content_id}>\r\n"
        "\r\n"
        f"HTTP/1.1 {status_code} {reason}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n"
        "\r\n"
        f"{body}\r\n"
    )


def batch_response_body(parts: Iterable[str]) -> str:
    return "".join(parts) + f"--{RESPONSE_BOUNDARY}--\r\n"


def google_error(status_code: int, message: str, status: str) -> dict[str, Any]:
    return {"error": {"code": status_code, "message": message, "status": status}}


class ScriptedBatchEndpoint:
    """Answers each sent operation with the next status from its script (default 200)."""

    def __init__(self, script: dict[str, list[int]] | None = None) -> None:
        self._script = {key: list(value) for key, value in (script or {}).items()}
        self.calls_per_id: dict[str, int] = {}

    def __call__(self, call_index: int, body: str) -> FakeResponse:
        parts = []
        for op_id in sent_operation_ids(body):
            self.calls_per_id[op_id] = self.calls_per_id.get(op_id, 0) + 1
            statuses = self._script.get(op_id)
            status = statuses.pop(0) if statuses else 200
            if 200 <= status < 300:
                payload = {"id": f"remote-{op_id}", "alternateLink": f"https://classroom.example/{op_id}"}
            else:
                payload = google_error(status, f"failure {status}", "FAILED")
            parts.append(sub_response(op_id, status, payload))
        return FakeResponse(batch_response_body(parts))


def make_operations(count: int, *, prefix: str = "op") -> list[Operation]:
    return [
        Operation(
            id=f"{prefix}{index}",
            path="/v1/courses/123/courseWork",
            body={"title": f"Assignment {index}", "workType": "ASSIGNMENT", "state": "DRAFT"},
            processed_item=ProcessedItem(title=f"Assignment {index}"),
        )
        for index in range(1, count + 1)
    ]


def no_jitter_policy(**overrides: Any) -> RetryPolicy:
    config = dict(max_retries=2, initial_delay_ms=1, backoff_factor=2.0, jitter_max_ms=0)
    config.update(overrides)
    return RetryPolicy(RetryConfig(**config), rng=lambda: 0.0)


@pytest.fixture()
def operations() -> list[Operation]:
    return make_operations(3)
