"""Event emitter implementations for manager observability.

Defines the EventEmitter interface and the sinks that do not depend on
metrics:
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to several sinks, isolating failures
- NullEventEmitter: Discards events

Emission never fails a pipeline pass: sink errors are logged and
dropped.

Source:
- src/manager/events/models.py (PipelineEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.manager.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Event sinks that can be enabled through configuration."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for manager event emitters.

    Implementations must not raise from emit(); failures are logged.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Emit a manager event."""

    async def close(self) -> None:
        """Release resources held by the emitter."""


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    ERROR events are logged at ERROR level, INGRESS_DROPPED at WARNING,
    everything else at INFO.

    Example:
        >>> emitter = LoggingEventEmitter()
        >>> await emitter.emit(PipelineEvent(
        ...     event_type=EventType.ROUTE_CLASSIFIED,
        ...     repository="org/repo",
        ...     details={"route": "start_planner"},
        ... ))
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.ERROR: logging.ERROR,
            EventType.INGRESS_DROPPED: logging.WARNING,
        }

    async def emit(self, event: PipelineEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Manager event: %s for %s",
            event.event_type.value,
            event.thread_id or event.repository,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Each child is called independently; a failing child does not stop
    the others.

    Attributes:
        emitters: Child emitters, in call order.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: PipelineEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Emitter %s failed: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={"event_type": event.event_type.value, "error": str(e)},
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: PipelineEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an emitter for the requested sinks.

    Returns a LoggingEventEmitter when no sinks are requested, the single
    emitter when one is, and a CompositeEventEmitter otherwise.
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports this module
            from src.manager.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())

    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
