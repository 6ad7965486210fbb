"""Prometheus metrics for the workflow orchestrator.

Metrics Defined:
- civicflow_workflows_total: Finished workflows by city and result
- civicflow_agent_steps_total: Agent attempts by agent type and outcome
- civicflow_agent_latency_seconds: Agent invocation latency
- civicflow_escalations_total: Escalations routed to the human queue
- civicflow_workflow_duration_seconds: Intake-to-finish duration

MetricsEventEmitter keeps these up to date from WorkflowEvents. The
/metrics endpoint serves generate_metrics_output().
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.civicflow.events.emitter import EventEmitter
from src.civicflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


# Agent calls run from milliseconds (rules) to tens of seconds (LLM)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)

WORKFLOW_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 3600.0)


class WorkflowMetrics:
    """Container for the orchestrator's Prometheus metrics.

    Pass a fresh CollectorRegistry in tests to avoid duplicate registration
    against the global REGISTRY.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.workflows_total = Counter(
            "civicflow_workflows_total",
            "Workflows that reached a final or parked status",
            labelnames=["city_id", "result"],
            registry=self.registry,
        )
        self.agent_steps_total = Counter(
            "civicflow_agent_steps_total",
            "Agent invocation attempts",
            labelnames=["agent_type", "outcome"],
            registry=self.registry,
        )
        self.agent_latency_seconds = Histogram(
            "civicflow_agent_latency_seconds",
            "Agent invocation latency in seconds",
            labelnames=["agent_type"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.escalations_total = Counter(
            "civicflow_escalations_total",
            "Escalations routed to the human queue",
            labelnames=["city_id", "reason"],
            registry=self.registry,
        )
        self.workflow_duration_seconds = Histogram(
            "civicflow_workflow_duration_seconds",
            "Time from intake to workflow completion in seconds",
            labelnames=["city_id"],
            buckets=WORKFLOW_DURATION_BUCKETS,
            registry=self.registry,
        )

    def record_step(self, agent_type: str, outcome: str, latency_seconds: Optional[float]) -> None:
        self.agent_steps_total.labels(agent_type=agent_type, outcome=outcome).inc()
        if latency_seconds is not None:
            self.agent_latency_seconds.labels(agent_type=agent_type).observe(latency_seconds)

    def record_workflow(self, city_id: str, result: str) -> None:
        self.workflows_total.labels(city_id=city_id, result=result).inc()

    def record_escalation(self, city_id: str, reason: str) -> None:
        self.escalations_total.labels(city_id=city_id, reason=reason).inc()


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Global metrics for the default registry, or a new instance for a custom one."""
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()
    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Prometheus text exposition of ``registry`` (default REGISTRY)."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Updates WorkflowMetrics from workflow events."""

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        try:
            details = event.details
            if event.event_type == EventType.STEP_COMPLETED:
                self._metrics.record_step(
                    details.get("agent_type", "unknown"),
                    details.get("outcome", "succeeded"),
                    details.get("latency_seconds"),
                )
            elif event.event_type in (EventType.STEP_FAILED, EventType.TIMEOUT):
                outcome = "timeout" if event.event_type == EventType.TIMEOUT else "failed"
                self._metrics.record_step(
                    details.get("agent_type", "unknown"),
                    outcome,
                    details.get("latency_seconds"),
                )
            elif event.event_type == EventType.ESCALATION:
                self._metrics.record_escalation(
                    event.city_id, details.get("reason_code", "unspecified")
                )
                if details.get("workflow_parked"):
                    self._metrics.record_workflow(event.city_id, "escalated")
            elif event.event_type == EventType.COMPLETION:
                self._metrics.record_workflow(event.city_id, "completed")
                duration = details.get("duration_seconds")
                if duration is not None:
                    self._metrics.workflow_duration_seconds.labels(
                        city_id=event.city_id
                    ).observe(float(duration))
            elif event.event_type == EventType.ERROR:
                self._metrics.record_workflow(event.city_id, "failed")
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "workflow_id": event.workflow_id,
                    "error": str(e),
                },
            )
