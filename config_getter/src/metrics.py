from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes share one counter with a ``result`` label
    (``noop``, ``updated``, ``retry``, ``gave_up``) so operators can alert on the
    give-up rate directly.
    """

    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_queue_adds_total",
            "Total keys accepted by the work queue",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "config_getter_queue_depth",
            "Current number of keys waiting to be processed",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_queue_retries_total",
            "Total rate-limited re-adds scheduled by the work queue",
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_reconcile_total",
            "Total reconciliation attempts by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "config_getter_reconcile_duration_seconds",
            "Seconds spent processing one key",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    fetch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_fetch_errors_total",
            "Total failed fetches of annotation targets",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    events_failed_total: Counter = field(
        default_factory=lambda: Counter(
            "config_getter_events_failed_total",
            "Total Kubernetes Events that could not be recorded",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_getter",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
