"""Multipart batch encoder: serialises operations into one multipart/mixed request body."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from batcher.app.constants import MULTIPART_MIXED
from batcher.app.domain.errors import encode_error, mark_error
from batcher.app.domain.models import Operation

CRLF = "\r\n"


@dataclass(frozen=True)
class EncodedBatch:
    boundary: str
    body: str
    operations: list[Operation]
    rejected: list[Operation]

    @property
    def content_type(self) -> str:
        return f"{MULTIPART_MIXED}; boundary={self.boundary}"


def new_boundary() -> str:
    return f"batch_{uuid.uuid4().hex}"


def _encode_part(operation: Operation, payload: str, content_length: int, boundary: str) -> str:
    return "".join(
        (
            f"--{boundary}{CRLF}",
            f"Content-Type: application/http{CRLF}",
            f"Content-ID: {operation.id}{CRLF}",
            CRLF,
            f"{operation.method} {operation.path} HTTP/1.1{CRLF}",
            f"Content-Type: application/json; charset=UTF-8{CRLF}",
            f"Content-Length: {content_length}{CRLF}",
            CRLF,
            f"{payload}{CRLF}",
        )
    )


def encode_batch(
    operations: Sequence[Operation],
    *,
    boundary: str | None = None,
    max_operations: int | None = None,
) -> EncodedBatch:
    """Encode operations into a batch body.

    Operations whose body cannot be JSON-encoded are left out of the body, marked with
    an ENCODE error and returned in `rejected`. Output is deterministic for a given
    boundary.
    """
    if max_operations is not None and len(operations) > max_operations:
        raise ValueError(f"batch of {len(operations)} exceeds the limit of {max_operations} operations")

    boundary = boundary or new_boundary()
    chunks: list[str] = []
    included: list[Operation] = []
    rejected: list[Operation] = []

    for operation in operations:
        try:
            payload = json.dumps(
                operation.body,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
            )
            content_length = len(payload.encode("utf-8"))
        except (TypeError, ValueError) as exc:
            logger.warning("operation {} rejected: body cannot be encoded as UTF-8 JSON: {}", operation.id, exc)
            mark_error(operation.processed_item, encode_error(operation.id, exc), overwrite=True)
            rejected.append(operation)
            continue
        chunks.append(_encode_part(operation, payload, content_length, boundary))
        included.append(operation)

    chunks.append(f"--{boundary}--{CRLF}")
    return EncodedBatch(boundary=boundary, body="".join(chunks), operations=included, rejected=rejected)
