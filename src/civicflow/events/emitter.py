"""Event emitter implementations.

The orchestrator emits WorkflowEvents through the EventEmitter interface
without knowing where they end up:

- LoggingEventEmitter: Structured log entries
- CompositeEventEmitter: Fan-out to several emitters
- NullEventEmitter: Discards events
- MetricsEventEmitter (metrics.py): Prometheus metrics
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.civicflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Event sinks that can be enabled through configuration."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters.

    emit() is called from the orchestrator's async paths. Implementations
    must not raise: a failing sink is logged, never propagated.
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Publish one event to the sink."""
        pass

    async def close(self) -> None:
        """Release resources held by the emitter."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes events as structured log entries.

    Errors log at ERROR, timeouts and escalations at WARNING, everything
    else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.ERROR: logging.ERROR,
            EventType.TIMEOUT: logging.WARNING,
            EventType.ESCALATION: logging.WARNING,
            EventType.STEP_FAILED: logging.WARNING,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Workflow event: %s for issue %s",
            event.event_type.value,
            event.issue_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delegates to several child emitters; one failing child does not stop the others."""

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "workflow_id": event.workflow_id,
                        "error": str(e),
                    },
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
    """Discards all events."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


class RecordingEventEmitter(EventEmitter):
    """Keeps emitted events in memory, in order."""

    def __init__(self) -> None:
        self.events: List[WorkflowEvent] = []

    async def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[WorkflowEvent]:
        return [e for e in self.events if e.event_type == event_type]


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build an emitter for the requested sinks.

    No sinks means logging only; several sinks yield a CompositeEventEmitter.
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []
    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports this module
            from src.civicflow.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)
