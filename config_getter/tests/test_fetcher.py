from __future__ import annotations

import httpx
import pytest

from config_getter.src.errors import FetchError
from config_getter.src.fetcher import HTTPFetcher


def _fetcher(handler: object) -> HTTPFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[arg-type]
    return HTTPFetcher(client=client)


def test_get_returns_response_body() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"Why did the chicken cross the road?")

    with _fetcher(handler) as fetcher:
        body = fetcher.get("https://curl-a-joke.herokuapp.com")

    assert body == b"Why did the chicken cross the road?"
    assert seen == ["https://curl-a-joke.herokuapp.com"]


def test_get_follows_redirects() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "https://example.com/new"})
        return httpx.Response(200, content=b"moved")

    with _fetcher(handler) as fetcher:
        assert fetcher.get("https://example.com/old") == b"moved"


def test_get_raises_fetch_error_on_http_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"unavailable")

    with _fetcher(handler) as fetcher, pytest.raises(FetchError, match="HTTP 503"):
        fetcher.get("https://example.com")


def test_get_raises_fetch_error_on_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Name or service not known", request=request)

    with _fetcher(handler) as fetcher, pytest.raises(FetchError, match="Name or service not known"):
        fetcher.get("https://notarealwebsite12346.com")


def test_default_client_uses_configured_timeout() -> None:
    fetcher = HTTPFetcher(timeout_seconds=3)
    try:
        assert fetcher._client.timeout.read == 3
        assert fetcher._client.follow_redirects is True
    finally:
        fetcher.close()
