"""Workflow event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks
- MetricsEventEmitter: Updates Prometheus metrics
- NullEventEmitter / RecordingEventEmitter: Discard or keep events

Metrics:
- WorkflowMetrics: Container for all Prometheus metrics
- get_metrics / generate_metrics_output: Access and /metrics exposition
"""

from src.civicflow.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    RecordingEventEmitter,
    create_event_emitter,
)
from src.civicflow.events.metrics import (
    MetricsEventEmitter,
    WorkflowMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.civicflow.events.models import EventType, WorkflowEvent

__all__ = [
    "EventType",
    "WorkflowEvent",
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "RecordingEventEmitter",
    "WorkflowMetrics",
    "get_metrics",
    "generate_metrics_output",
    "EventSinkType",
    "create_event_emitter",
]
