from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger

from batcher.app.constants import ERROR_STAGE
from batcher.app.core import SERVICE_NAME
from batcher.app.domain.batch_dispatcher import BatchDispatcher
from batcher.app.domain.errors import (
    DuplicateOperationError,
    MissingCredentialError,
    ProcessingError,
    mark_error,
    pending_error,
)
from batcher.app.domain.models import Operation, ResponseParser, SupportsProcessingError


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(order=True)
class _ScheduledRetry:
    fire_at: float
    seq: int
    operation: Operation = field(compare=False)


class BatchOrchestrator:
    """
    Runs a set of operations to completion through repeated batch dispatches.

    Operations leave the FIFO queue in chunks of max_operations_per_batch. Operations the
    dispatcher hands back for retry go onto a min-heap keyed by fire time and return to
    the back of the queue once due; the same coroutine drains both, so the queue and the
    pending-timer count are never touched concurrently.

    The run ends when the queue and the heap are both empty, or early on cancellation,
    deadline expiry or the iteration ceiling; in the early cases every pending operation
    is finalized with a CANCELLED, DEADLINE or ORCHESTRATION error. Once dispatching has
    begun nothing is raised: the result always holds one item per input operation.
    """

    def __init__(
        self,
        dispatcher: BatchDispatcher,
        max_operations_per_batch: int,
        *,
        poll_interval_seconds: float = 0.2,
        deadline_seconds: float | None = None,
    ) -> None:
        if max_operations_per_batch < 1:
            raise ValueError("max_operations_per_batch must be at least 1")
        self._dispatcher = dispatcher
        self._max_operations_per_batch = max_operations_per_batch
        self._poll_interval_seconds = poll_interval_seconds
        self._deadline_seconds = deadline_seconds

    def max_iterations(self, operation_count: int) -> int:
        max_retries = self._dispatcher.retry_policy.config.max_retries
        return operation_count * (max_retries + 1) + operation_count + 10

    async def run(
        self,
        operations: Sequence[Operation],
        access_token: str | None,
        parser: ResponseParser,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[SupportsProcessingError]:
        if not access_token or not access_token.strip():
            logger.error("batch run refused: authentication token missing")
            raise MissingCredentialError("Authentication token missing for batch operation.")
        self._check_unique_ids(operations)

        loop = asyncio.get_running_loop()
        queue: deque[Operation] = deque(operations)
        scheduled: list[_ScheduledRetry] = []
        sequence = itertools.count()
        max_iterations = self.max_iterations(len(operations))
        deadline_at = loop.time() + self._deadline_seconds if self._deadline_seconds is not None else None
        iterations = 0

        _log(
            "batch_run_started",
            batch_url=self._dispatcher.batch_url,
            operations=len(operations),
            max_operations_per_batch=self._max_operations_per_batch,
        )

        while True:
            now = loop.time()
            self._release_due(scheduled, queue, now)

            if cancel_event is not None and cancel_event.is_set():
                count = self._finalize_pending(queue, scheduled, "Batch run cancelled.", ERROR_STAGE.CANCELLED)
                _log("batch_run_cancelled", finalized=count, iterations=iterations)
                break

            if deadline_at is not None and now >= deadline_at:
                count = self._finalize_pending(queue, scheduled, "Batch run deadline exceeded.", ERROR_STAGE.DEADLINE)
                _log("batch_run_deadline_exceeded", finalized=count, iterations=iterations)
                break

            if not queue:
                if not scheduled:
                    _log("batch_run_drained", operations=len(operations), iterations=iterations)
                    break
                timeout = min(scheduled[0].fire_at - now, self._poll_interval_seconds)
                if deadline_at is not None:
                    timeout = min(timeout, deadline_at - now)
                await self._wait(max(timeout, 0.0), cancel_event)
                continue

            iterations += 1
            if iterations > max_iterations:
                logger.error("batch run aborted: max iterations reached ({})", max_iterations)
                self._finalize_pending(
                    queue,
                    scheduled,
                    "Max batch processing iterations reached.",
                    ERROR_STAGE.ORCHESTRATION,
                )
                break

            size = min(len(queue), self._max_operations_per_batch)
            batch = [queue.popleft() for _ in range(size)]
            await self._dispatch(batch, access_token, parser, scheduled, sequence, loop)

        return [operation.processed_item for operation in operations]

    async def _dispatch(
        self,
        batch: list[Operation],
        access_token: str,
        parser: ResponseParser,
        scheduled: list[_ScheduledRetry],
        sequence: itertools.count,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        try:
            result = await self._dispatcher.dispatch(batch, access_token, parser)
        except Exception as exc:
            logger.exception("batch chunk of {} operations failed unrecoverably", len(batch))
            for operation in batch:
                mark_error(
                    operation.processed_item,
                    ProcessingError(
                        message=f"Batch chunk failed unrecoverably: {exc}",
                        stage=ERROR_STAGE.ORCHESTRATION,
                        details={"opId": operation.id, "exception": repr(exc)},
                    ),
                )
            return

        policy = self._dispatcher.retry_policy
        for operation in result.to_retry:
            delay = policy.delay_seconds(max(operation.retries_attempted, 1))
            heapq.heappush(scheduled, _ScheduledRetry(loop.time() + delay, next(sequence), operation))
            _log(
                "retry_scheduled",
                op_id=operation.id,
                title=operation.title,
                retry=operation.retries_attempted,
                max_retries=policy.config.max_retries,
                delay_ms=round(delay * 1000),
            )

    async def _wait(self, timeout: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await asyncio.sleep(timeout)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(cancel_event.wait(), timeout)

    @staticmethod
    def _release_due(scheduled: list[_ScheduledRetry], queue: deque[Operation], now: float) -> None:
        while scheduled and scheduled[0].fire_at <= now:
            queue.append(heapq.heappop(scheduled).operation)

    @staticmethod
    def _finalize_pending(
        queue: deque[Operation],
        scheduled: list[_ScheduledRetry],
        message: str,
        stage: str,
    ) -> int:
        pending = list(queue) + [entry.operation for entry in scheduled]
        queue.clear()
        scheduled.clear()
        for operation in pending:
            item = operation.processed_item
            mark_error(item, pending_error(message, stage, operation.id, item.processing_error), overwrite=True)
        return len(pending)

    @staticmethod
    def _check_unique_ids(operations: Sequence[Operation]) -> None:
        seen: set[str] = set()
        for operation in operations:
            if operation.id in seen:
                raise DuplicateOperationError(f"duplicate operation id in batch run: {operation.id}")
            seen.add(operation.id)
