"""Multipart batch decoder.

Tokenises a multipart/mixed batch response line by line with an explicit state
(seeking boundary, part headers, part body), then correlates every sub-response with
the operation whose id appears in its `Content-ID: response-<id>` header. Broken
parts are recorded on the matching item and never abort the rest of the batch.
"""
from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Sequence, Union

from loguru import logger

from batcher.app.constants import ERROR_STAGE, RESPONSE_CONTENT_ID_PREFIX
from batcher.app.domain.errors import (
    ProcessingError,
    format_error,
    item_failure_error,
    mark_error,
)
from batcher.app.domain.models import Operation, ResponseParser

_BOUNDARY_RE = re.compile(r"boundary=(\"?)([^\";]+)\1", re.IGNORECASE)
_CONTENT_ID_RE = re.compile(
    r"^content-id:\s*<?\s*" + re.escape(RESPONSE_CONTENT_ID_PREFIX) + r"([^\s<>]+)\s*>?\s*$",
    re.IGNORECASE,
)
_STATUS_LINE_RE = re.compile(r"^HTTP/\d(?:\.\d)?\s+(\d{3})(?:\s+(.*))?$")


class _State(enum.Enum):
    SEEKING_BOUNDARY = "seeking_boundary"
    PART_HEADERS = "part_headers"
    PART_BODY = "part_body"
    DONE = "done"


@dataclass(frozen=True)
class SubResponse:
    """One encapsulated HTTP response. status_code is None when no status line was found."""

    index: int
    content_id: str | None
    status_code: int | None
    status_text: str
    headers: list[str]
    body: str


@dataclass(frozen=True)
class MalformedPart:
    """A part that never reached the blank line separating its headers from its body."""

    index: int
    content_id: str | None
    preview: str


DecodedPart = Union[SubResponse, MalformedPart]


def boundary_from_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    match = _BOUNDARY_RE.search(content_type)
    if not match:
        return None
    return match.group(2).strip() or None


def _iter_lines(text: str) -> Iterator[str]:
    """Yield lines without their CRLF / LF terminator. Unlike str.splitlines, only newlines split."""
    start = 0
    length = len(text)
    while start < length:
        end = text.find("\n", start)
        if end == -1:
            yield text[start:]
            return
        line = text[start:end]
        if line.endswith("\r"):
            line = line[:-1]
        yield line
        start = end + 1


def _content_id(headers: list[str]) -> str | None:
    for header in headers:
        match = _CONTENT_ID_RE.match(header.strip())
        if match:
            return match.group(1)
    return None


def _parse_encapsulated(index: int, content_id: str | None, lines: list[str]) -> SubResponse:
    position = 0
    while position < len(lines) and not lines[position].strip():
        position += 1

    headers: list[str] = []
    while position < len(lines) and lines[position].strip():
        headers.append(lines[position])
        position += 1
    body = "\r\n".join(lines[position:]).strip()

    status_code: int | None = None
    status_text = ""
    for header in headers:
        match = _STATUS_LINE_RE.match(header.strip())
        if match:
            status_code = int(match.group(1))
            status_text = (match.group(2) or "").strip()
            break

    return SubResponse(
        index=index,
        content_id=content_id,
        status_code=status_code,
        status_text=status_text,
        headers=headers,
        body=body,
    )


def _finish_part(index: int, state: _State, headers: list[str], body: list[str]) -> DecodedPart | None:
    if not headers and not any(line.strip() for line in body):
        return None
    content_id = _content_id(headers)
    if state is _State.PART_HEADERS:
        return MalformedPart(index=index, content_id=content_id, preview="\r\n".join(headers)[:300])
    return _parse_encapsulated(index, content_id, body)


def iter_sub_responses(body: str, boundary: str) -> Iterator[DecodedPart]:
    """Split a batch body into parts. Preamble, epilogue and empty parts are skipped."""
    delimiter = f"--{boundary}"
    closing = f"{delimiter}--"
    state = _State.SEEKING_BOUNDARY
    index = -1
    part_headers: list[str] = []
    part_body: list[str] = []

    for line in _iter_lines(body):
        marker = line.rstrip()
        if marker == delimiter or marker == closing:
            if state in (_State.PART_HEADERS, _State.PART_BODY):
                part = _finish_part(index, state, part_headers, part_body)
                if part is not None:
                    yield part
            if marker == closing:
                state = _State.DONE
                break
            index += 1
            part_headers, part_body = [], []
            state = _State.PART_HEADERS
            continue

        if state is _State.SEEKING_BOUNDARY:
            continue
        if state is _State.PART_HEADERS:
            if line.strip():
                part_headers.append(line)
            elif part_headers:
                state = _State.PART_BODY
            continue
        part_body.append(line)

    if state in (_State.PART_HEADERS, _State.PART_BODY):
        logger.warning("batch response ended without a closing boundary")
        part = _finish_part(index, state, part_headers, part_body)
        if part is not None:
            yield part


def _apply_sub_response(operation: Operation, part: SubResponse, parser: ResponseParser) -> None:
    item = operation.processed_item
    if part.status_code is None:
        mark_error(
            item,
            format_error(
                "Malformed encapsulated sub-response: no HTTP status line found.",
                opId=operation.id,
                headersPreview="\r\n".join(part.headers)[:100],
            ),
            overwrite=True,
        )
        logger.warning("batch op {} {}: no HTTP status line in sub-response", operation.id, operation.title)
        return

    status_code = part.status_code
    response_json: Any = {}
    if part.body:
        try:
            response_json = json.loads(part.body)
        except ValueError as exc:
            mark_error(
                item,
                ProcessingError(
                    message=f"Exception processing sub-response: invalid JSON body ({exc})",
                    stage=ERROR_STAGE.SUB_RESPONSE,
                    details={
                        "statusCode": status_code,
                        "statusText": part.status_text,
                        "responseBodyPreview": part.body[:100],
                        "opId": operation.id,
                    },
                ),
                overwrite=True,
            )
            logger.warning("batch op {} {}: sub-response body is not JSON (status {})", operation.id, operation.title, status_code)
            return

    try:
        parser(item, response_json, status_code, part.status_text, operation.id)
    except Exception as exc:
        logger.exception("batch op {} {}: response parser raised (status {})", operation.id, operation.title, status_code)
        mark_error(
            item,
            ProcessingError(
                message=f"Exception processing sub-response: {exc}",
                stage=ERROR_STAGE.SUB_RESPONSE,
                details={
                    "statusCode": status_code,
                    "statusText": part.status_text,
                    "responseBodyPreview": part.body[:100],
                    "opId": operation.id,
                    "exception": repr(exc),
                },
            ),
            overwrite=True,
        )
        return

    if 200 <= status_code < 300:
        if item.processing_error is not None:
            logger.warning("batch op {} {}: parser set an error on status {}", operation.id, operation.title, status_code)
        return

    if mark_error(item, item_failure_error(status_code, part.status_text, response_json, operation.id)):
        logger.warning("batch op {} {}: failed with status {}", operation.id, operation.title, status_code)


def decode_batch_response(
    body: str,
    content_type: str | None,
    operations: Sequence[Operation],
    parser: ResponseParser,
) -> None:
    """Decode a batch response and apply every sub-response to its operation's item.

    Operations of this attempt that got no sub-response at all are marked with a
    FORMAT error, so an absent answer never passes for success.
    """
    boundary = boundary_from_content_type(content_type)
    if boundary is None:
        logger.error("batch response has no boundary in Content-Type: {}", content_type)
        for operation in operations:
            mark_error(
                operation.processed_item,
                format_error("Batch parse error: no boundary in Content-Type", contentTypeHeader=content_type),
                overwrite=True,
            )
        return

    by_id = {operation.id: operation for operation in operations}
    answered: set[str] = set()

    for part in iter_sub_responses(body, boundary):
        operation = by_id.get(part.content_id) if part.content_id else None

        if isinstance(part, MalformedPart):
            logger.warning("batch part {} has no header/body separator: {}", part.index, part.preview)
            if operation is not None and operation.id in answered:
                logger.warning("batch part {} repeats Content-ID {}; ignored", part.index, part.content_id)
            elif operation is not None:
                answered.add(operation.id)
                mark_error(
                    operation.processed_item,
                    format_error("Malformed part: No header/body separator", opId=operation.id, partIndex=part.index),
                    overwrite=True,
                )
            continue

        if part.content_id is None:
            logger.warning("batch part {} has no 'response-<id>' Content-ID: {}", part.index, part.headers[:1])
            continue
        if operation is None:
            logger.warning(
                "batch part {} Content-ID {} matches no operation of this attempt ({})",
                part.index,
                part.content_id,
                ", ".join(by_id),
            )
            continue
        if operation.id in answered:
            logger.warning("batch part {} repeats Content-ID {}; ignored", part.index, part.content_id)
            continue

        answered.add(operation.id)
        _apply_sub_response(operation, part, parser)

    for operation in operations:
        if operation.id not in answered:
            mark_error(
                operation.processed_item,
                format_error("No sub-response for operation in batch response", opId=operation.id),
                overwrite=True,
            )
            logger.warning("batch op {} {}: no sub-response in batch response", operation.id, operation.title)
