from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Action counters carry ``kind``/``operation``/``outcome`` labels so
    operators can alert on failed creates separately from absorbed
    ``already_exists`` replays.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_events_total",
            "Total PreviewEnvironment watch events reconciled",
            ["type"],
        )
    )
    actions_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_actions_total",
            "Total dependent-resource actions by outcome",
            ["kind", "operation", "outcome"],
        )
    )
    action_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_action_retries_total",
            "Total retries of dependent-resource actions after transient errors",
            ["kind"],
        )
    )
    event_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_event_errors_total",
            "Total watch events that could not be processed",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_watch_errors_total",
            "Total Kubernetes watch subscription errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "preview_controller_watch_reconnects_total",
            "Total watch subscriptions after the initial connection",
        )
    )
    watch_state: Gauge = field(
        default_factory=lambda: Gauge(
            "preview_controller_watch_state",
            "Current watch connection state (0=disconnected, 1=connecting, 2=streaming)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "preview_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
