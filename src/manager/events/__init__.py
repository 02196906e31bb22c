"""Manager event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Updates Prometheus counters
- NullEventEmitter: Discards events (for testing)

Metrics:
- ManagerMetrics: Container for the Prometheus counters
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Prometheus format output for /metrics
"""

from src.manager.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.manager.events.metrics import (
    ManagerMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.manager.events.models import EventType, PipelineEvent

__all__ = [
    "EventType",
    "PipelineEvent",
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "ManagerMetrics",
    "get_metrics",
    "generate_metrics_output",
    "EventSinkType",
    "create_event_emitter",
]
