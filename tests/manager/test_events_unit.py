"""Unit tests for event emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

from prometheus_client import CollectorRegistry

from src.manager.events.emitter import (
    CompositeEventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.manager.events.metrics import ManagerMetrics, MetricsEventEmitter
from src.manager.events.models import EventType, PipelineEvent


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


def _event(event_type: EventType, **details) -> PipelineEvent:
    return PipelineEvent(
        event_type=event_type,
        repository="acme/widgets",
        thread_id="thread-1",
        issue_number=7,
        details=details,
    )


def _sample(registry: CollectorRegistry, name: str, **labels) -> float:
    return registry.get_sample_value(name, labels) or 0.0


class TestPipelineEvent:
    def test_log_dict_flattens_details(self):
        data = _event(EventType.ROUTE_CLASSIFIED, route="start_planner").to_log_dict()

        assert data["event_type"] == "route_classified"
        assert data["repository"] == "acme/widgets"
        assert data["issue_number"] == 7
        assert data["route"] == "start_planner"
        assert "timestamp" in data


class TestLoggingEventEmitter:
    def test_error_events_logged_at_error(self, caplog):
        emitter = LoggingEventEmitter(logger_name="test.events")

        with caplog.at_level(logging.INFO, logger="test.events"):
            run_async(emitter.emit(_event(EventType.ERROR, stage="classify")))
            run_async(emitter.emit(_event(EventType.INGRESS_DROPPED)))
            run_async(emitter.emit(_event(EventType.SESSION_STARTED)))

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.ERROR, logging.WARNING, logging.INFO]


class TestCompositeEventEmitter:
    def test_failing_child_does_not_stop_others(self):
        failing = MagicMock()
        failing.emit = AsyncMock(side_effect=RuntimeError("sink down"))
        healthy = MagicMock()
        healthy.emit = AsyncMock()
        composite = CompositeEventEmitter([failing, healthy])

        run_async(composite.emit(_event(EventType.TICKET_CREATED)))

        healthy.emit.assert_awaited_once()

    def test_close_closes_children(self):
        child = MagicMock()
        child.close = AsyncMock()
        composite = CompositeEventEmitter()
        composite.add_emitter(child)

        run_async(composite.close())

        child.close.assert_awaited_once()
        assert composite.emitters == [child]


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_single_sink(self):
        emitter = create_event_emitter([EventSinkType.LOGGING])
        assert isinstance(emitter, LoggingEventEmitter)

    def test_multiple_sinks(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [LoggingEventEmitter, MetricsEventEmitter]

    def test_null_emitter(self):
        run_async(NullEventEmitter().emit(_event(EventType.ERROR)))


class TestMetricsEventEmitter:
    def test_counters_follow_events(self):
        registry = CollectorRegistry()
        emitter = MetricsEventEmitter(metrics=ManagerMetrics(registry=registry))

        run_async(emitter.emit(_event(EventType.ROUTE_CLASSIFIED, route="start_planner")))
        run_async(emitter.emit(_event(EventType.SESSION_STARTED)))
        run_async(emitter.emit(_event(EventType.SESSION_RESUMED)))
        run_async(emitter.emit(_event(EventType.SESSION_FORKED)))
        run_async(emitter.emit(_event(EventType.INGRESS_DROPPED)))
        run_async(emitter.emit(_event(EventType.ERROR, stage="classify")))

        assert _sample(registry, "manager_routes_total", route="start_planner") == 1
        assert _sample(registry, "manager_sessions_total", action="started") == 1
        assert _sample(registry, "manager_sessions_total", action="resumed") == 1
        assert _sample(registry, "manager_sessions_total", action="forked") == 1
        assert _sample(registry, "manager_ingress_total", outcome="dropped") == 1
        assert _sample(registry, "manager_errors_total", stage="classify") == 1

    def test_ingress_outcomes(self):
        registry = CollectorRegistry()
        emitter = MetricsEventEmitter(metrics=ManagerMetrics(registry=registry))

        run_async(
            emitter.emit(_event(EventType.SESSION_STARTED, ingress_outcome="acknowledged"))
        )
        run_async(emitter.emit(_event(EventType.ERROR, stage="ingress")))

        assert _sample(registry, "manager_ingress_total", outcome="acknowledged") == 1
        assert _sample(registry, "manager_ingress_total", outcome="failed") == 1
        assert _sample(registry, "manager_errors_total", stage="ingress") == 1
