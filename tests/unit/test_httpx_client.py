"""Unit tests for the httpx adapter, driven through httpx.MockTransport."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from batcher.app.infrastructure.http.httpx_client import HttpxHttpClient
from batcher.app.ports.http_client import (
    HttpClientError,
    HttpClientTimeoutError,
    RequestTimeout,
    header_value,
)

TIMEOUT = RequestTimeout(connect_seconds=1.0, read_seconds=1.0)


def _client(handler) -> HttpxHttpClient:  # noqa: ANN001
    return HttpxHttpClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_post_sends_body_and_headers_and_adapts_response():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, headers={"Content-Type": "multipart/mixed; boundary=x"}, text="--x--\r\n")

    async def scenario():
        client = _client(handler)
        try:
            return await client.post(
                "https://example.test/batch",
                content=b"payload",
                timeout=TIMEOUT,
                headers={"Authorization": "Bearer t"},
            )
        finally:
            await client.close()

    response = asyncio.run(scenario())

    assert seen == {"method": "POST", "body": b"payload", "auth": "Bearer t"}
    assert response.status_code == 200
    assert response.elapsed_seconds >= 0
    assert header_value(response.headers, "content-type") == "multipart/mixed; boundary=x"
    assert response.text == "--x--\r\n"
    response.raise_for_status()


def test_raise_for_status_maps_to_http_client_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async def scenario():
        client = _client(handler)
        try:
            return await client.post("https://example.test/batch", content=b"", timeout=TIMEOUT)
        finally:
            await client.close()

    response = asyncio.run(scenario())

    with pytest.raises(HttpClientError) as info:
        response.raise_for_status()
    assert info.value.status_code == 429
    assert info.value.reason == "Too Many Requests"
    assert "slow down" in info.value.body


def test_timeouts_and_network_errors_are_mapped():
    def timing_out(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def refusing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def post(handler):  # noqa: ANN001
        client = _client(handler)
        try:
            await client.post("https://example.test/batch", content=b"", timeout=TIMEOUT)
        finally:
            await client.close()

    with pytest.raises(HttpClientTimeoutError):
        asyncio.run(post(timing_out))
    with pytest.raises(HttpClientError) as info:
        asyncio.run(post(refusing))
    assert info.value.status_code is None


def test_header_value_is_case_insensitive_for_plain_dicts():
    assert header_value({"content-type": "text/plain"}, "Content-Type") == "text/plain"
    assert header_value({}, "Content-Type") is None
