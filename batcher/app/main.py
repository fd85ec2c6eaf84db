"""Command-line runner: execute a JSON file of batch operations and print the results."""
from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Sequence

import click
import httpx
from loguru import logger

from batcher.app.application.parsers import record_created_resource
from batcher.app.composition import create_batcher_dependencies
from batcher.app.config.settings import Settings
from batcher.app.core import SERVICE_NAME
from batcher.app.domain.errors import BatchRunError
from batcher.app.domain.models import Operation, ProcessedItem


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def load_operations(path: Path) -> list[Operation]:
    """Read `[{id?, method?, path, body, title?}, ...]` into operations with fresh items."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("operations file must hold a JSON list")

    operations: list[Operation] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict) or not entry.get("path"):
            raise ValueError(f"operation {index} is missing required field: path")
        item = ProcessedItem(title=entry.get("title"))
        method = str(entry.get("method", "POST"))
        body = entry.get("body", {})
        if entry.get("id"):
            operations.append(Operation(id=str(entry["id"]), path=entry["path"], body=body, processed_item=item, method=method))
        else:
            operations.append(Operation.create(entry["path"], body, item, method=method))
    return operations


def serialize_results(operations: Sequence[Operation]) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for operation in operations:
        item = operation.processed_item
        error = item.processing_error
        results.append(
            {
                "id": operation.id,
                "title": getattr(item, "title", None),
                "result": dict(getattr(item, "result", {}) or {}),
                "retries_attempted": operation.retries_attempted,
                "processing_error": error.to_dict() if error is not None else None,
            }
        )
    return results


async def run_batch(
    operations: Sequence[Operation],
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[Any]:
    async with create_batcher_dependencies(settings, transport=transport) as deps:
        return await deps.orchestrator.run(
            operations,
            settings.access_token,
            record_created_resource,
            cancel_event=cancel_event,
        )


async def _run_until_signalled(operations: Sequence[Operation], settings: Settings) -> list[Any]:
    cancel_event = asyncio.Event()

    def request_cancel() -> None:
        if not cancel_event.is_set():
            _log("cancel_signal")
            cancel_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_cancel)
        except (NotImplementedError, RuntimeError):
            pass

    return await run_batch(operations, settings, cancel_event=cancel_event)


@click.command()
@click.argument("operations_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "-o", "--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help="Write results JSON here instead of stdout.",
)
def main(operations_file: Path, output: Path | None) -> None:
    """Send the operations in OPERATIONS_FILE through the batch endpoint configured in the environment."""
    settings = Settings()
    try:
        operations = load_operations(operations_file)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="OPERATIONS_FILE") from exc

    try:
        asyncio.run(_run_until_signalled(operations, settings))
    except BatchRunError as exc:
        _log("batch_run_refused", error=str(exc))
        raise click.ClickException(str(exc)) from exc

    results = serialize_results(operations)
    failed = sum(1 for result in results if result["processing_error"] is not None)
    _log("batch_run_finished", operations=len(results), failed=failed)

    payload = json.dumps(results, indent=2, ensure_ascii=False)
    if output is not None:
        output.write_text(payload + "\n", encoding="utf-8")
    else:
        click.echo(payload)


if __name__ == "__main__":
    main()
