from __future__ import annotations

import urllib.error
import urllib.request

from config_getter.src.controller import ControllerState, ControllerStatus
from config_getter.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for health endpoints driven by the controller's lifecycle state."""

    def setup_method(self) -> None:
        self.status = ControllerStatus(
            state=ControllerState.SYNCING_CACHE, synced=False, queue_depth=0
        )
        self.server = start_health_server(status=lambda: self.status, port=0)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_returns_200_while_running(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_healthz_returns_503_once_controller_stopped(self) -> None:
        self.status = ControllerStatus(
            state=ControllerState.STOPPED, synced=False, queue_depth=0
        )

        status, body = _get(f"{self.base_url}/healthz")

        assert status == 503
        assert body == "state=Stopped synced=false queue_depth=0"

    def test_readyz_returns_503_before_cache_sync(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "state=SyncingCache synced=false queue_depth=0"

    def test_readyz_returns_200_once_synced(self) -> None:
        self.status = ControllerStatus(state=ControllerState.READY, synced=True, queue_depth=3)

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 200
        assert body == "state=Ready synced=true queue_depth=3"

    def test_readyz_returns_503_while_draining(self) -> None:
        self.status = ControllerStatus(
            state=ControllerState.DRAINING, synced=False, queue_depth=1
        )

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 503
        assert "state=Draining" in body

    def test_metrics_exposes_controller_metrics(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "config_getter_reconcile_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404
