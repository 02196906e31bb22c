"""Prometheus metrics for the session manager.

Metrics Defined:
- manager_routes_total{route}: Classified messages per route
- manager_sessions_total{action}: Sessions started, resumed or forked
- manager_ingress_total{outcome}: Webhook events acknowledged, dropped
  or failed
- manager_errors_total{stage}: Failures per pipeline stage

MetricsEventEmitter updates the counters from pipeline events; the
/metrics endpoint serves generate_metrics_output().

Source:
- src/manager/events/models.py (PipelineEvent, EventType)
"""

import logging
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, generate_latest

from src.manager.events.emitter import EventEmitter
from src.manager.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


SESSION_ACTIONS = {
    EventType.SESSION_STARTED: "started",
    EventType.SESSION_RESUMED: "resumed",
    EventType.SESSION_FORKED: "forked",
}


class ManagerMetrics:
    """Container for the manager's Prometheus counters.

    Pass a dedicated CollectorRegistry in tests to avoid duplicate
    registration on the default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.routes_total = Counter(
            "manager_routes_total",
            "Messages classified, by chosen route",
            labelnames=["route"],
            registry=self.registry,
        )
        self.sessions_total = Counter(
            "manager_sessions_total",
            "Session actions taken, by action",
            labelnames=["action"],
            registry=self.registry,
        )
        self.ingress_total = Counter(
            "manager_ingress_total",
            "Webhook events handled, by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )
        self.errors_total = Counter(
            "manager_errors_total",
            "Pipeline failures, by stage",
            labelnames=["stage"],
            registry=self.registry,
        )

    def record_route(self, route: str) -> None:
        self.routes_total.labels(route=route).inc()

    def record_session(self, action: str) -> None:
        self.sessions_total.labels(action=action).inc()

    def record_ingress(self, outcome: str) -> None:
        self.ingress_total.labels(outcome=outcome).inc()

    def record_error(self, stage: str) -> None:
        self.errors_total.labels(stage=stage).inc()


_default_metrics: Optional[ManagerMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> ManagerMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return ManagerMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = ManagerMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text exposition for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus counters.

    - ROUTE_CLASSIFIED: routes_total{route}
    - SESSION_STARTED/RESUMED/FORKED: sessions_total{action}
    - INGRESS_DROPPED: ingress_total{outcome="dropped"}
    - ERROR: errors_total{stage}, plus ingress_total{outcome="failed"}
      for ingress failures
    - other events with ``ingress_outcome`` in details: ingress_total
    """

    def __init__(
        self,
        metrics: Optional[ManagerMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> ManagerMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.ROUTE_CLASSIFIED:
                self._metrics.record_route(event.details.get("route", "unknown"))
            elif event.event_type in SESSION_ACTIONS:
                self._metrics.record_session(SESSION_ACTIONS[event.event_type])
            elif event.event_type == EventType.INGRESS_DROPPED:
                self._metrics.record_ingress("dropped")
            elif event.event_type == EventType.ERROR:
                stage = event.details.get("stage", "unknown")
                self._metrics.record_error(stage)
                if stage == "ingress":
                    self._metrics.record_ingress("failed")

            outcome = event.details.get("ingress_outcome")
            if outcome:
                self._metrics.record_ingress(outcome)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "error": str(e)},
            )
