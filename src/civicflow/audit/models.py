"""Audit trail models.

ProcessingStepRecord is the unit of the append-only audit trail. Agent
attempts, intake acceptance, manual retries, status changes, overrides and
recoveries are all records; they are frozen once built and never edited or
deleted. Replaying a workflow's records in sequence order reconstructs its
exact WorkflowState.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from src.civicflow.agents.base import AgentType
from src.civicflow.state.models import StepOutcome, WorkflowStatus


class RecordKind(str, Enum):
    """What a ProcessingStepRecord documents.

    Attributes:
        INTAKE: Issue accepted and workflow created.
        AGENT_STEP: One agent invocation attempt.
        RETRY_REQUESTED: Operator re-opened a failed or escalated step.
        STATUS_CHANGE: Orchestrator-approved issue status change.
        OVERRIDE: Administrator override of an earlier decision.
        RECOVERY: Stored state re-derived from the audit trail.
    """

    INTAKE = "intake"
    AGENT_STEP = "agent_step"
    RETRY_REQUESTED = "retry_requested"
    STATUS_CHANGE = "status_change"
    OVERRIDE = "override"
    RECOVERY = "recovery"


# Record kinds that change WorkflowState when replayed
STATE_KINDS = frozenset({RecordKind.AGENT_STEP, RecordKind.RETRY_REQUESTED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingStepRecord(BaseModel):
    """One immutable audit record.

    Attributes:
        record_id: Unique record identifier.
        workflow_id: Workflow the record belongs to.
        issue_id: Issue the record belongs to.
        city_id: City of the issue.
        sequence: Position within the workflow's trail (assigned on append).
        kind: What the record documents.
        agent_type: Agent invoked (agent steps and retries).
        step_index: Index of the step in the workflow (agent steps and retries).
        attempt: Attempt number of the step, 1-indexed (agent steps).
        started_at: When the documented action started (UTC).
        ended_at: When it ended (UTC).
        input_payload: Opaque input (request, override request, ...).
        output_payload: Opaque output (agent response, new value, ...).
        confidence: Confidence of the documented decision (0.0-1.0).
        reasoning: Human-readable reasoning; never empty.
        success: Whether the action succeeded.
        error: Error detail; present iff success is False.
        outcome: Step outcome after this record (agent steps).
        resulting_status: Workflow status after this record (state kinds).
        actor: Who acted (administrator for overrides, "system" otherwise).
        references_record_id: Original decision record (overrides).
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str = Field(..., min_length=1)
    issue_id: str = Field(..., min_length=1)
    city_id: str = Field(..., min_length=1)
    sequence: int = Field(default=0, ge=0)
    kind: RecordKind
    agent_type: Optional[AgentType] = None
    step_index: Optional[int] = Field(default=None, ge=0)
    attempt: Optional[int] = Field(default=None, ge=1)
    started_at: datetime = Field(default_factory=_now)
    ended_at: datetime = Field(default_factory=_now)
    input_payload: Dict[str, Any] = Field(default_factory=dict)
    output_payload: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1)
    success: bool = True
    error: Optional[str] = None
    outcome: Optional[StepOutcome] = None
    resulting_status: Optional[WorkflowStatus] = None
    actor: str = "system"
    references_record_id: Optional[str] = None

    @model_validator(mode="after")
    def check_consistency(self) -> "ProcessingStepRecord":
        if self.success and self.error:
            raise ValueError("error must be empty for successful records")
        if not self.success and not self.error:
            raise ValueError("error is required for failed records")
        if self.ended_at < self.started_at:
            raise ValueError("ended_at must not precede started_at")
        if self.kind in STATE_KINDS:
            if self.agent_type is None or self.step_index is None:
                raise ValueError(f"{self.kind.value} records need agent_type and step_index")
            if self.resulting_status is None:
                raise ValueError(f"{self.kind.value} records need resulting_status")
        if self.kind == RecordKind.AGENT_STEP and (self.outcome is None or self.attempt is None):
            raise ValueError("agent_step records need outcome and attempt")
        if self.kind == RecordKind.OVERRIDE and self.references_record_id is None:
            raise ValueError("override records must reference the original decision")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


class OverrideRequest(BaseModel):
    """Administrator override of a decision on an issue.

    Attributes:
        issue_id: Issue whose decision is overridden.
        actor: Identity of the overriding administrator.
        field: Decision overridden: "classification", "priority",
            "duplicate_of" or "status".
        new_value: The replacement value.
        justification: Why the override was made.
    """

    issue_id: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)
    field: str = Field(..., pattern=r"^(classification|priority|duplicate_of|status)$")
    new_value: Any
    justification: str = Field(..., min_length=1)
