from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from config_getter.src.controller import build_controller_from_env, env_int
from config_getter.src.fetcher import HTTPFetcher
from config_getter.src.health import start_health_server
from config_getter.src.kube import build_clients, load_kube_configuration
from config_getter.src.metrics import METRICS

RUNTIME_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at the ``LOG_LEVEL`` level."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, wire dependencies, and run until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api = build_clients()

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    fetch_timeout_seconds = env_int("FETCH_TIMEOUT_SECONDS", 10, minimum=1)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    with HTTPFetcher(timeout_seconds=fetch_timeout_seconds) as fetcher:
        controller = build_controller_from_env(core_api=core_api, fetcher=fetcher)
        health_server = start_health_server(status=controller.status, port=health_port)
        try:
            controller.run(stop_event=shutdown_event)
            if not shutdown_event.is_set():
                logging.getLogger(__name__).error(
                    "Controller exited without a stop signal; terminating process"
                )
                shutdown_event.set()
        finally:
            health_server.shutdown()

    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
