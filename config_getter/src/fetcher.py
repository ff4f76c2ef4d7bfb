from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx

from config_getter.src.errors import FetchError
from config_getter.src.metrics import METRICS

if TYPE_CHECKING:
    from types import TracebackType


class Fetcher(Protocol):
    def get(self, url: str) -> bytes: ...


class HTTPFetcher:
    """Fetch annotation targets over HTTP(S).

    Keeps one :class:`httpx.Client` for connection reuse.  Redirects are
    followed; transport failures and responses with status >= 400 are raised
    as :class:`FetchError` so the controller can schedule a retry.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    def get(self, url: str) -> bytes:
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            METRICS.fetch_errors_total.inc()
            raise FetchError(
                f"failed to fetch {url}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            METRICS.fetch_errors_total.inc()
            raise FetchError(f"failed to fetch {url}: {exc}") from exc

        self.logger.debug("Fetched %d bytes from %s", len(response.content), url)
        return response.content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HTTPFetcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
