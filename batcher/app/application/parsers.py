"""Response parsers for batched "create resource" calls (Classroom courseWork, Drive files, Forms)."""
from __future__ import annotations

from typing import Any

from batcher.app.constants import ERROR_STAGE
from batcher.app.domain.errors import ProcessingError, mark_error
from batcher.app.domain.models import ResponseParser


def _result_slot(item: Any) -> dict[str, Any]:
    result = getattr(item, "result", None)
    if result is None:
        result = {}
        item.result = result
    return result


def make_result_recorder(*fields: str) -> ResponseParser:
    """Build a parser that copies `fields` from a 2xx body into item.result.

    A 2xx body without a required "id" is recorded as an item error; non-2xx bodies
    become an item error carrying the Google error message and status code.
    """

    def record(item: Any, response_json: Any, status_code: int, status_text: str, operation_id: str) -> None:
        body = response_json if isinstance(response_json, dict) else {}

        if 200 <= status_code < 300:
            if "id" in fields and not body.get("id"):
                mark_error(
                    item,
                    ProcessingError(
                        message="Created resource response has no id.",
                        stage=ERROR_STAGE.ITEM,
                        details={"statusCode": status_code, "opId": operation_id, "responseBody": response_json},
                    ),
                )
                return
            result = _result_slot(item)
            for name in fields:
                if name in body:
                    result[name] = body[name]
            return

        google_error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = google_error.get("message") or status_text or "Unknown error"
        mark_error(
            item,
            ProcessingError(
                message=f"{message} (Status: {status_code})",
                stage=ERROR_STAGE.ITEM,
                details={
                    "statusCode": status_code,
                    "status": google_error.get("status"),
                    "errorBody": google_error or response_json,
                    "opId": operation_id,
                },
            ),
        )

    return record


record_created_resource = make_result_recorder("id", "alternateLink", "webViewLink", "responderUri")
