"""
Billing metrics.

The manager runs in one of two modes:
1. No-op mode: every method exists but records nothing
2. Active mode: Prometheus counters and histograms in a private registry

Code paths call the same methods in both modes, so disabling metrics never
changes behaviour.
"""

import time
import typing as t
from contextlib import contextmanager

from flask import Flask, Response, current_app, has_app_context


class MetricsManager:
    """Central manager for billing metrics."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.registry = None
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        if self.enabled:
            from prometheus_client import CollectorRegistry, Counter, Histogram

            self.registry = CollectorRegistry()

            self.webhook_events_total = Counter(
                "stripe_webhook_events_total",
                "Stripe webhook deliveries by event type and outcome",
                ["event_type", "outcome"],
                registry=self.registry,
            )
            self.checkout_sessions_total = Counter(
                "checkout_sessions_total",
                "Checkout session requests by outcome",
                ["outcome"],
                registry=self.registry,
            )
            self.reconciliations_total = Counter(
                "subscription_reconciliations_total",
                "Subscription reconciliations by action",
                ["action"],
                registry=self.registry,
            )
            self.processor_call_seconds = Histogram(
                "stripe_call_duration_seconds",
                "Stripe API call latency in seconds",
                ["operation"],
                buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
                registry=self.registry,
            )
        else:
            self.webhook_events_total = _DummyMetric()
            self.checkout_sessions_total = _DummyMetric()
            self.reconciliations_total = _DummyMetric()
            self.processor_call_seconds = _DummyMetric()

    def record_webhook(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_checkout(self, outcome: str) -> None:
        self.checkout_sessions_total.labels(outcome=outcome).inc()

    def record_reconciliation(self, action: str) -> None:
        self.reconciliations_total.labels(action=action).inc()

    @contextmanager
    def observe_latency(self, operation: str) -> t.Generator[None, None, None]:
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.processor_call_seconds.labels(operation=operation).observe(
                time.perf_counter() - start_time
            )

    def render(self) -> Response:
        if not self.enabled:
            return Response("metrics disabled\n", status=404, mimetype="text/plain")

        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        return Response(generate_latest(self.registry), mimetype=CONTENT_TYPE_LATEST)


class _DummyMetric:
    """Dummy metric object that mimics the Prometheus metric interface."""

    def labels(self, **labels: str) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, amount: float) -> None:
        pass


_noop_metrics = MetricsManager(enabled=False)


def init_metrics(app: Flask) -> MetricsManager:
    manager = MetricsManager(enabled=app.config.get("METRICS_ENABLED", False))
    app.extensions["billing_metrics"] = manager

    @app.route("/metrics")
    def metrics_endpoint():
        return manager.render()

    return manager


def get_metrics() -> MetricsManager:
    """Metrics of the current app, or a no-op manager outside a request."""
    if has_app_context():
        return current_app.extensions.get("billing_metrics", _noop_metrics)
    return _noop_metrics
