"""Workflow state machine models.

This module defines the persisted per-issue execution state:
- WorkflowStatus: Enum of workflow statuses
- StepOutcome: Enum of per-step outcomes
- StepState: Outcome and retry counter of one agent step
- WorkflowState: Complete state of one issue's workflow
- VALID_TRANSITIONS: Map defining allowed status transitions

The cursor points at the next step to execute. It only moves forward when
the step at the cursor ends succeeded or flagged, so the steps before the
cursor are exactly the steps that never have to run again.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.civicflow.agents.base import AgentType
from src.civicflow.workflow_config import WorkflowConfig


class WorkflowStatus(str, Enum):
    """Statuses a workflow moves through.

    Status Flow:
        running ⇄ waiting_retry → escalated → running (manual retry)
        running → completed | failed

    Attributes:
        RUNNING: Steps are being executed.
        WAITING_RETRY: The step at the cursor failed and will be retried.
        ESCALATED: Retries exhausted; parked until an operator retries.
        COMPLETED: Every step succeeded or was flagged.
        FAILED: A non-retryable error ended the workflow.
    """

    RUNNING = "running"
    WAITING_RETRY = "waiting_retry"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    FAILED = "failed"


class StepOutcome(str, Enum):
    """Outcome of an agent step.

    Attributes:
        PENDING: Not attempted yet.
        SUCCEEDED: Accepted by the confidence policy.
        FLAGGED: Succeeded below the confidence threshold; needs review.
        FAILED: Last attempt failed; a retry is allowed.
        ESCALATED: Attempts exhausted; waiting for an operator.
    """

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FLAGGED = "flagged"
    FAILED = "failed"
    ESCALATED = "escalated"


ADVANCING_OUTCOMES = frozenset({StepOutcome.SUCCEEDED, StepOutcome.FLAGGED})
RESUMABLE_STATUSES = frozenset({WorkflowStatus.RUNNING, WorkflowStatus.WAITING_RETRY})
RETRYABLE_STATUSES = frozenset({WorkflowStatus.WAITING_RETRY, WorkflowStatus.ESCALATED})


class StepState(BaseModel):
    """Persisted state of one agent step.

    Attributes:
        agent_type: Agent executed by this step.
        outcome: Latest outcome.
        attempts: Attempts made so far (all runs, manual retries included).
        attempts_in_run: Attempts made since the step was last (re)started.
        last_error: Error of the most recent failed attempt.
    """

    agent_type: AgentType
    outcome: StepOutcome = StepOutcome.PENDING
    attempts: int = Field(default=0, ge=0)
    attempts_in_run: int = Field(default=0, ge=0)
    last_error: Optional[str] = None


class WorkflowState(BaseModel):
    """Complete state of one issue's workflow.

    Persisted with optimistic locking via the version field.

    Attributes:
        workflow_id: Unique workflow identifier.
        issue_id: Issue processed by this workflow.
        city_id: City of the issue.
        steps: Ordered step states, one per agent in the config's sequence.
        cursor: Index of the next step to execute.
        status: Current workflow status.
        config: Config snapshot taken when the workflow started.
        context: Accepted step outputs keyed by agent type value.
        error: Failure description when status is FAILED.
        created_at: When the workflow was created (UTC).
        updated_at: When the workflow was last updated (UTC).
        version: Optimistic locking version.
    """

    workflow_id: str = Field(..., min_length=1)
    issue_id: str = Field(..., min_length=1)
    city_id: str = Field(..., min_length=1)
    steps: List[StepState] = Field(default_factory=list)
    cursor: int = Field(default=0, ge=0)
    status: WorkflowStatus = WorkflowStatus.RUNNING
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    context: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=1, ge=1)

    @property
    def current_step(self) -> Optional[StepState]:
        if self.cursor >= len(self.steps):
            return None
        return self.steps[self.cursor]

    @property
    def is_finished(self) -> bool:
        return self.status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)

    def outcome_snapshot(self) -> Dict[str, Any]:
        """Fields that audit replay must reproduce exactly."""
        return {
            "cursor": self.cursor,
            "status": self.status,
            "steps": [step.model_dump() for step in self.steps],
            "context": self.context,
            "error": self.error,
        }


VALID_TRANSITIONS: Dict[WorkflowStatus, List[WorkflowStatus]] = {
    WorkflowStatus.RUNNING: [
        WorkflowStatus.RUNNING,
        WorkflowStatus.WAITING_RETRY,
        WorkflowStatus.ESCALATED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.WAITING_RETRY: [
        WorkflowStatus.RUNNING,
        WorkflowStatus.WAITING_RETRY,
        WorkflowStatus.ESCALATED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    ],
    # ESCALATED: only a manual retry (back to running) or an operator failure
    WorkflowStatus.ESCALATED: [
        WorkflowStatus.RUNNING,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.COMPLETED: [],
    WorkflowStatus.FAILED: [],
}


def is_valid_transition(from_status: WorkflowStatus, to_status: WorkflowStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: WorkflowStatus) -> bool:
    return len(VALID_TRANSITIONS.get(status, [])) == 0
