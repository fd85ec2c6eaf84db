"""Structured processing errors and the run-level exceptions.

Every failure the engine records on an item is a ProcessingError with a stage from
ERROR_STAGE. Retry eligibility reads only `details["statusCode"]` (see RetryPolicy).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from batcher.app.constants import ERROR_STAGE
from batcher.app.ports.http_client import HttpClientError


class BatchRunError(Exception):
    """Raised when a run cannot start at all. Nothing has been dispatched."""


class MissingCredentialError(BatchRunError):
    """Raised when no bearer token is supplied for the run."""


class DuplicateOperationError(BatchRunError):
    """Raised when two operations of one run share a correlation id."""


@dataclass
class ProcessingError:
    """Error attached to a processed item."""

    message: str
    stage: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int | None:
        code = self.details.get("statusCode")
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        return code

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "stage": self.stage, "details": dict(self.details)}


def mark_error(item: Any, error: ProcessingError, *, overwrite: bool = False) -> bool:
    """Attach error to item. Keeps an existing error unless overwrite is set; returns True if written."""
    if item.processing_error is not None and not overwrite:
        return False
    item.processing_error = error
    return True


def format_error(message: str, **details: Any) -> ProcessingError:
    return ProcessingError(message=message, stage=ERROR_STAGE.FORMAT, details=details)


def encode_error(operation_id: str, exc: Exception) -> ProcessingError:
    return ProcessingError(
        message=f"Operation body cannot be encoded as UTF-8 JSON: {exc}",
        stage=ERROR_STAGE.ENCODE,
        details={"opId": operation_id, "exception": repr(exc)},
    )


def transport_error(exc: HttpClientError) -> ProcessingError:
    details: dict[str, Any] = {"errorBody": exc.body if exc.body is not None else str(exc)}
    if exc.status_code is not None:
        details["statusCode"] = exc.status_code
    return ProcessingError(
        message=f"Batch POST failed: {format_http_error(exc)}",
        stage=ERROR_STAGE.TRANSPORT,
        details=details,
    )


def item_failure_error(
    status_code: int,
    status_text: str,
    response_json: Any,
    operation_id: str,
) -> ProcessingError:
    """Generic error for a non-2xx sub-response the parser left unmarked."""
    google_error = response_json.get("error") if isinstance(response_json, dict) else None
    api_message = None
    if isinstance(google_error, dict):
        api_message = google_error.get("message")
    api_message = api_message or status_text or "Unknown error in sub-response."
    return ProcessingError(
        message=f"Batch item failed: {api_message} (Status: {status_code})",
        stage=ERROR_STAGE.ITEM,
        details={
            "statusCode": status_code,
            "errorBody": google_error if google_error is not None else response_json,
            "opId": operation_id,
        },
    )


def pending_error(message: str, stage: str, operation_id: str, previous: ProcessingError | None) -> ProcessingError:
    """Error for an operation force-finalized while still queued or scheduled."""
    details: dict[str, Any] = {"opId": operation_id}
    if previous is not None:
        details["previousError"] = previous.to_dict()
    return ProcessingError(message=message, stage=stage, details=details)


def _google_error(body: str | None) -> Any:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    return parsed.get("error") if isinstance(parsed, dict) else None


def format_http_error(error: object) -> str:
    """Render an HTTP failure the way Google API errors read in logs and item errors."""
    if isinstance(error, HttpClientError) and error.status_code is not None:
        message = f"HTTP {error.status_code} {error.reason or 'Error'}"
        google_error = _google_error(error.body)
        if isinstance(google_error, dict) and google_error.get("message"):
            message += f": {google_error['message']}"
            details = google_error.get("details")
            if isinstance(details, list) and details:
                message += f" Details: {json.dumps(details)}"
            elif google_error.get("status"):
                message += f" Status: {google_error['status']}"
        elif error.body:
            message += f": {error.body}"
        return message
    if isinstance(error, BaseException):
        return f"Error: {error}"
    return f"Unknown error occurred: {json.dumps(error, default=str)}"
