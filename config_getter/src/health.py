from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config_getter.src.controller import ControllerState, ControllerStatus

StatusSource = Callable[[], ControllerStatus]


def describe_status(status: ControllerStatus) -> bytes:
    synced = "true" if status.synced else "false"
    return (
        f"state={status.state.value} synced={synced} queue_depth={status.queue_depth}"
    ).encode()


class _HealthHandler(BaseHTTPRequestHandler):
    """Serve health endpoints derived from the controller's lifecycle state.

    ``/healthz`` fails once the controller has stopped, so a process whose
    reconcile loop ended (informer denied, cache never synced) gets restarted.
    ``/readyz`` passes only while caches are synced and workers are running.
    """

    status_source: StatusSource

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            status = self.status_source()
            if status.state is ControllerState.STOPPED:
                self._respond(503, describe_status(status))
            else:
                self._respond(200, b"ok")
        elif self.path == "/readyz":
            status = self.status_source()
            code = 200 if status.synced and status.state is ControllerState.READY else 503
            self._respond(code, describe_status(status))
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("config_getter.health").debug(fmt, *args)


def make_health_handler(source: StatusSource) -> type[_HealthHandler]:
    """Return a handler class bound to *source*.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        status_source = staticmethod(source)  # type: ignore[assignment]

    return _BoundHealthHandler


def start_health_server(status: StatusSource, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(status))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
