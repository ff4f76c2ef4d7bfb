from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from config_getter.src.__main__ import JSONFormatter, main, redact_sensitive_text


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        output = JSONFormatter().format(self._make_record())
        parsed = json.loads(output)

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "Fetching https://example.com/?access_token=qwerty "
                "Authorization: Bearer abc.def.ghi password=hunter2"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "qwerty" not in message
        assert "abc.def.ghi" not in message
        assert "hunter2" not in message


def test_redact_leaves_plain_urls_alone() -> None:
    assert redact_sensitive_text("Fetching https://curl-a-joke.herokuapp.com") == (
        "Fetching https://curl-a-joke.herokuapp.com"
    )


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _mock_controller(self) -> MagicMock:
        mock_controller = MagicMock()

        def fake_run(stop_event: threading.Event | None = None) -> None:
            if stop_event is not None:
                stop_event.set()

        mock_controller.run.side_effect = fake_run
        return mock_controller

    def test_main_wires_controller_and_health_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        monkeypatch.setenv("FETCH_TIMEOUT_SECONDS", "4")
        mock_controller = self._mock_controller()

        with (
            patch("config_getter.src.__main__.load_kube_configuration") as mock_load,
            patch("config_getter.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "config_getter.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ) as mock_build,
            patch("config_getter.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once()
        mock_controller.run.assert_called_once()
        fetcher = mock_build.call_args.kwargs["fetcher"]
        assert fetcher.timeout_seconds == 4
        assert mock_health.call_args.kwargs["port"] == 9090
        assert mock_health.call_args.kwargs["status"] is mock_controller.status
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_shuts_down_health_server_when_controller_crashes(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = self._mock_controller()
        mock_controller.run.side_effect = RuntimeError("boom")

        with (
            patch("config_getter.src.__main__.load_kube_configuration"),
            patch("config_getter.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "config_getter.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("config_getter.src.__main__.start_health_server") as mock_health,
            pytest.raises(RuntimeError, match="boom"),
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = self._mock_controller()
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("config_getter.src.__main__.signal.signal", side_effect=tracking_signal),
            patch("config_getter.src.__main__.load_kube_configuration"),
            patch("config_getter.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "config_getter.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("config_getter.src.__main__.start_health_server", return_value=MagicMock()),
        ):
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "0")

        with (
            patch("config_getter.src.__main__.load_kube_configuration"),
            patch("config_getter.src.__main__.build_clients", return_value=SimpleNamespace()),
            pytest.raises(ValueError, match="HEALTH_PORT"),
        ):
            main()

    def test_main_logs_controller_exit_without_stop_signal(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = self._mock_controller()
        mock_controller.run.side_effect = None

        with (
            patch("config_getter.src.__main__.load_kube_configuration"),
            patch("config_getter.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "config_getter.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("config_getter.src.__main__.start_health_server") as mock_health,
            caplog.at_level(logging.ERROR, logger="config_getter.src.__main__"),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert "Controller exited without a stop signal" in caplog.text
        mock_health.return_value.shutdown.assert_called_once()
