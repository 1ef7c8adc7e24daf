from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Rollout counters carry a ``kind`` label so operators can tell Deployment
    restarts from StatefulSet restarts when alerting on error rates.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_events_total",
            "Total agent config diff entries processed",
            ["type"],
        )
    )
    event_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_event_errors_total",
            "Total diff entries dropped because they could not be processed",
            ["reason"],
        )
    )
    rollouts_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_rollouts_total",
            "Total workload rollouts triggered by agent config changes",
            ["kind"],
        )
    )
    rollout_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_rollout_errors_total",
            "Total workload rollout patches that failed",
            ["kind"],
        )
    )
    generated_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_generated_total",
            "Total agent configs generated for workloads seen for the first time",
        )
    )
    store_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_store_writes_total",
            "Total agent config store calls by outcome",
            ["operation"],
        )
    )
    watch_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_watch_restarts_total",
            "Total watch streams reopened after the remote side closed them",
            ["namespace"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "agent_config_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watched_namespaces: Gauge = field(
        default_factory=lambda: Gauge(
            "agent_config_watched_namespaces",
            "Number of namespaces with a running agents ConfigMap watcher",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "agent_config",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
