"""Composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from batcher.app.application.orchestrator import BatchOrchestrator
from batcher.app.config.settings import Settings
from batcher.app.core import SERVICE_NAME
from batcher.app.domain.batch_dispatcher import BatchDispatcher
from batcher.app.domain.retry_policy import RetryPolicy
from batcher.app.infrastructure.http.factory import create_http_client
from batcher.app.ports.http_client import AbstractHttpClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class BatcherDependencies:
    """Holds wired engine dependencies and their lifecycle."""

    def __init__(
        self,
        *,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http_client: AbstractHttpClient | None = None
        self._orchestrator: BatchOrchestrator | None = None
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def orchestrator(self) -> BatchOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("orchestrator is not initialized")
        return self._orchestrator

    async def connect(self) -> None:
        self._http_client = create_http_client(self._settings, transport=self._transport)
        dispatcher = BatchDispatcher(
            self._http_client,
            RetryPolicy(self._settings.retry_config()),
            self._settings.batch_endpoint_url,
            connect_timeout_seconds=self._settings.request_connect_timeout_seconds,
            read_timeout_seconds=self._settings.request_read_timeout_seconds,
            max_operations_per_batch=self._settings.max_operations_per_batch,
        )
        self._orchestrator = BatchOrchestrator(
            dispatcher,
            self._settings.max_operations_per_batch,
            poll_interval_seconds=self._settings.poll_interval_seconds,
            deadline_seconds=self._settings.run_deadline_seconds,
        )
        self._connected = True
        _log("dependencies_connected", batch_url=self._settings.batch_endpoint_url)

    async def close(self) -> None:
        if self._http_client is not None:
            try:
                await self._http_client.close()
            except Exception as exc:
                logger.warning("http client close failed: {}", exc)
            self._http_client = None

        self._orchestrator = None
        self._connected = False

    async def __aenter__(self) -> "BatcherDependencies":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def create_batcher_dependencies(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BatcherDependencies:
    return BatcherDependencies(settings=settings or Settings(), transport=transport)
