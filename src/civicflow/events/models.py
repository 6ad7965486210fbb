"""Workflow event models for observability.

Events are emitted at key points of a workflow for monitoring, alerting
and dashboards. They complement the audit trail but are not part of it:
losing an event never loses a decision.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the orchestrator.

    Attributes:
        WORKFLOW_STARTED: An issue was accepted and its workflow created.
        STEP_COMPLETED: An agent step was accepted or flagged.
        STEP_FAILED: An agent attempt failed (retry may follow).
        TIMEOUT: An agent attempt exceeded its timeout.
        ESCALATION: A workflow or decision was routed to the human queue.
        COMPLETION: A workflow completed.
        ERROR: A workflow failed on a non-retryable error.
    """

    WORKFLOW_STARTED = "workflow_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    ESCALATION = "escalation"
    COMPLETION = "completion"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the orchestrator.

    Details Field Conventions:
        STEP_COMPLETED / STEP_FAILED / TIMEOUT:
            - agent_type, attempt, latency_seconds, outcome or error
        ESCALATION:
            - reason, agent_type (when a step triggered it)
        COMPLETION:
            - issue_status, duration_seconds
        ERROR:
            - error_message, agent_type
    """

    event_type: EventType = Field(..., description="The category of event being emitted")
    workflow_id: str = Field(..., min_length=1)
    issue_id: str = Field(..., min_length=1)
    city_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary of the event for structured logging."""
        return {
            "event_type": self.event_type.value,
            "workflow_id": self.workflow_id,
            "issue_id": self.issue_id,
            "city_id": self.city_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
