"""
Observability metrics module.

The manager operates in two modes:
1. No-op mode: every recording method exists but does nothing
2. Active mode: Prometheus counters on a registry owned by the manager

Each manager owns its CollectorRegistry so several apps (tests, workers) can
live in one process without duplicate-registration errors.
"""

import typing as t

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest


class ReconcilerMetrics:
    """Central manager for reconciliation metrics."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.registry: t.Optional[CollectorRegistry] = None
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        if self.enabled:
            self.registry = CollectorRegistry()

            self.webhook_events_total = Counter(
                "billing_webhook_events_total",
                "Webhook deliveries by event type and outcome",
                ["event_type", "outcome"],
                registry=self.registry,
            )
            self.plan_resolutions_total = Counter(
                "billing_plan_resolutions_total",
                "Plan resolutions by source",
                ["source"],
                registry=self.registry,
            )
            self.transitions_total = Counter(
                "billing_transitions_total",
                "State machine transitions by kind and result",
                ["kind", "result"],
                registry=self.registry,
            )
            self.anomalies_total = Counter(
                "billing_state_anomalies_total",
                "Invariant repairs and other state anomalies",
                ["anomaly"],
                registry=self.registry,
            )
            self.sweep_expirations_total = Counter(
                "billing_sweep_expirations_total",
                "Subscriptions expired by the sweep",
                registry=self.registry,
            )
            self.provider_calls_total = Counter(
                "billing_provider_calls_total",
                "Billing provider calls by operation and status",
                ["operation", "status"],
                registry=self.registry,
            )
        else:
            self.webhook_events_total = _DummyMetric()
            self.plan_resolutions_total = _DummyMetric()
            self.transitions_total = _DummyMetric()
            self.anomalies_total = _DummyMetric()
            self.sweep_expirations_total = _DummyMetric()
            self.provider_calls_total = _DummyMetric()

    def record_webhook(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type or "unknown", outcome=outcome).inc()

    def record_resolution(self, source: str) -> None:
        self.plan_resolutions_total.labels(source=source).inc()

    def record_transition(self, kind: str, result: str, anomalies: t.Iterable[str] = ()) -> None:
        self.transitions_total.labels(kind=kind, result=result).inc()
        for anomaly in anomalies:
            self.anomalies_total.labels(anomaly=anomaly).inc()

    def record_sweep_expiration(self, count: int = 1) -> None:
        if count:
            self.sweep_expirations_total.inc(count)

    def record_provider_call(self, operation: str, status: str) -> None:
        self.provider_calls_total.labels(operation=operation, status=status).inc()

    def render(self) -> t.Tuple[bytes, str]:
        """Body and content type for the /metrics endpoint."""
        if not self.enabled:
            return b"", CONTENT_TYPE_LATEST
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


class _DummyMetric:
    """Dummy metric object that mimics Prometheus metric interface."""

    def labels(self, **labels: str) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass
