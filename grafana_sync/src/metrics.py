from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-dashboard counters carry a ``namespace`` label so operators can alert
    on a single namespace that keeps failing without drowning in the rest.
    """

    passes_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_passes_total",
            "Total reconciliation passes by result",
            ["namespace", "result"],
        )
    )
    dashboard_actions_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_dashboard_actions_total",
            "Total per-dashboard outcomes by action",
            ["namespace", "action"],
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_errors_total",
            "Total per-dashboard errors reported during passes",
            ["namespace"],
        )
    )
    not_ready_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_not_ready_total",
            "Total requests skipped because Grafana or selectors were not ready",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_requeues_total",
            "Total requests requeued by directive kind",
            ["kind"],
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "grafana_dashboard_sync_pass_duration_seconds",
            "Seconds spent in a single namespace reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "grafana_dashboard_sync_queue_depth",
            "Current number of reconciliation requests waiting in the queue",
        )
    )
    registry_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "grafana_dashboard_sync_registry_entries",
            "Current number of dashboards believed present in Grafana",
        )
    )
    grafana_ready: Gauge = field(
        default_factory=lambda: Gauge(
            "grafana_dashboard_sync_grafana_ready",
            "Whether the Grafana instance is considered ready (1=yes, 0=no)",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "grafana_dashboard_sync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "grafana_dashboard_sync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
