"""Batch dispatcher: sends one encoded batch, retries the transport call, decodes the reply.

Uses the HTTP port (AbstractHttpClient); the client is built in the composition root.
Per-item results are written by the caller's parser; the dispatcher only partitions
the batch into finished operations and operations eligible for an item-level retry.
"""
from __future__ import annotations

from typing import Any, Sequence

from loguru import logger

from batcher.app.constants import MULTIPART_MIXED
from batcher.app.core import SERVICE_NAME
from batcher.app.core.backoff import exponential_backoff
from batcher.app.domain.errors import format_error, format_http_error, mark_error, transport_error
from batcher.app.domain.models import Operation, ResponseParser, SingleBatchResult
from batcher.app.domain.multipart_decoder import decode_batch_response
from batcher.app.domain.multipart_encoder import EncodedBatch, encode_batch
from batcher.app.domain.retry_policy import RetryPolicy
from batcher.app.ports.http_client import (
    AbstractHttpClient,
    HttpClientError,
    HttpResponse,
    RequestTimeout,
    header_value,
)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class BatchDispatcher:
    """Dispatches a single batch of operations to a Google batch endpoint."""

    def __init__(
        self,
        client: AbstractHttpClient,
        retry_policy: RetryPolicy,
        batch_url: str,
        *,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 60.0,
        max_operations_per_batch: int | None = None,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy
        self._batch_url = batch_url
        self._timeout = RequestTimeout(
            connect_seconds=connect_timeout_seconds,
            read_seconds=read_timeout_seconds,
        )
        self._max_operations_per_batch = max_operations_per_batch

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def batch_url(self) -> str:
        return self._batch_url

    async def dispatch(
        self,
        batch: Sequence[Operation],
        access_token: str,
        parser: ResponseParser,
    ) -> SingleBatchResult:
        # Each attempt starts clean; an error left by a previous attempt must not mask this one.
        for operation in batch:
            operation.processed_item.processing_error = None

        encoded = encode_batch(batch, max_operations=self._max_operations_per_batch)
        if not encoded.operations:
            return SingleBatchResult(attempted=list(batch), to_retry=[])

        try:
            response = await self._post_with_retry(encoded, access_token)
        except HttpClientError as exc:
            logger.error("batch POST of {} operations to {} failed critically: {}", len(encoded.operations), self._batch_url, format_http_error(exc))
            for operation in encoded.operations:
                mark_error(operation.processed_item, transport_error(exc))
            return SingleBatchResult(attempted=list(batch), to_retry=[])

        content_type = header_value(response.headers, "Content-Type")
        if not content_type or not content_type.strip().lower().startswith(MULTIPART_MIXED):
            logger.error("batch response is not multipart/mixed (Content-Type: {})", content_type)
            for operation in encoded.operations:
                mark_error(
                    operation.processed_item,
                    format_error("Batch response format error", statusCode=response.status_code, contentType=content_type),
                    overwrite=True,
                )
            return SingleBatchResult(attempted=list(batch), to_retry=[])

        decode_batch_response(response.text, content_type, encoded.operations, parser)

        attempted: list[Operation] = list(encoded.rejected)
        to_retry: list[Operation] = []
        for operation in encoded.operations:
            if self._retry_policy.should_retry_item(operation):
                operation.retries_attempted += 1
                to_retry.append(operation)
            else:
                attempted.append(operation)

        _log(
            "batch_dispatched",
            batch_url=self._batch_url,
            status_code=response.status_code,
            elapsed_seconds=response.elapsed_seconds,
            operations=len(batch),
            rejected=len(encoded.rejected),
            to_retry=len(to_retry),
            failed=sum(1 for op in attempted if op.processed_item.processing_error is not None),
        )
        return SingleBatchResult(attempted=attempted, to_retry=to_retry)

    async def _post_with_retry(self, encoded: EncodedBatch, access_token: str) -> HttpResponse:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": encoded.content_type,
        }
        content = encoded.body.encode("utf-8")
        max_attempts = self._retry_policy.config.max_retries + 1
        first_id = encoded.operations[0].id

        async for attempt in exponential_backoff(self._retry_policy.delay_seconds, max_attempts):
            try:
                response = await self._client.post(
                    self._batch_url,
                    content=content,
                    timeout=self._timeout,
                    headers=headers,
                )
                response.raise_for_status()
                return response
            except HttpClientError as exc:
                if not self._retry_policy.should_retry_exception(exc, attempt - 1):
                    raise
                logger.warning(
                    "batch POST (first op {}) failed (attempt {}/{}): {}; retrying",
                    first_id,
                    attempt,
                    max_attempts,
                    format_http_error(exc),
                )
        raise RuntimeError("transport retry loop exited without a result")
