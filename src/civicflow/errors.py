"""Error taxonomy for the civic workflow orchestrator.

Every error carries a category so callers can tell apart:
- citizen_input: the submission needs more detail from the citizen
- admin_intervention: a human operator has to act
- caller_error: the caller asked for something the state does not permit
- transient: a retryable agent failure (never surfaces past the orchestrator
  unless retries are exhausted)

Low confidence is deliberately absent: it is a policy outcome, not an error.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(str, Enum):
    """Who has to act on an error."""

    CITIZEN_INPUT = "citizen_input"
    ADMIN_INTERVENTION = "admin_intervention"
    CALLER_ERROR = "caller_error"
    TRANSIENT = "transient"


class CivicFlowError(Exception):
    """Base class for all orchestrator errors.

    Attributes:
        message: Human-readable error description.
        category: Which party needs to act on the error.
    """

    category: ErrorCategory = ErrorCategory.CALLER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
        }


class SubmissionValidationError(CivicFlowError):
    """Raised when a submission is malformed or incomplete.

    The submission is preserved; intake keeps tracking the issue and
    prompts the citizen for the missing details instead of rejecting it.

    Attributes:
        submission: The data that was submitted, unchanged.
        prompts: Questions to put back to the citizen.
    """

    category = ErrorCategory.CITIZEN_INPUT

    def __init__(
        self,
        message: str,
        submission: Optional[Dict[str, Any]] = None,
        prompts: Optional[List[str]] = None,
    ):
        self.submission = submission or {}
        self.prompts = prompts or []
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["prompts"] = self.prompts
        return data


class AgentExecutionError(CivicFlowError):
    """Raised when an agent invocation fails (provider error, timeout).

    Attributes:
        agent_type: Value of the agent type that failed.
        cause: The underlying exception, if any.
        timed_out: True when the invocation exceeded its timeout.
    """

    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        agent_type: str,
        message: str,
        cause: Optional[Exception] = None,
        timed_out: bool = False,
    ):
        self.agent_type = agent_type
        self.cause = cause
        self.timed_out = timed_out
        super().__init__(f"{agent_type}: {message}")


class EscalationRequired(CivicFlowError):
    """Raised when a workflow needs a human (retries exhausted or business rule).

    Attributes:
        workflow_id: The parked workflow.
        reason: Why escalation happened.
    """

    category = ErrorCategory.ADMIN_INTERVENTION

    def __init__(self, workflow_id: str, reason: str):
        self.workflow_id = workflow_id
        self.reason = reason
        super().__init__(f"Workflow {workflow_id} escalated: {reason}")


class WorkflowFailed(CivicFlowError):
    """Raised when a workflow ends in the failed state.

    Attributes:
        workflow_id: The failed workflow.
        reason: The failure description stored on the workflow.
    """

    category = ErrorCategory.ADMIN_INTERVENTION

    def __init__(self, workflow_id: str, reason: str):
        self.workflow_id = workflow_id
        self.reason = reason
        super().__init__(f"Workflow {workflow_id} failed: {reason}")


class InvalidStateError(CivicFlowError):
    """Raised when an operation is not permitted by the workflow state."""

    category = ErrorCategory.CALLER_ERROR


class InvalidConfigError(CivicFlowError):
    """Raised when a proposed WorkflowConfig violates its invariants.

    Attributes:
        problems: Every violation found, in a stable order.
    """

    category = ErrorCategory.CALLER_ERROR

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("Invalid workflow config: " + "; ".join(problems))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["problems"] = self.problems
        return data


class NotFoundError(CivicFlowError):
    """Raised when a workflow or issue id is unknown.

    Attributes:
        kind: "workflow" or "issue".
        identifier: The id that was looked up.
    """

    category = ErrorCategory.CALLER_ERROR

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class VersionConflictError(CivicFlowError):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        workflow_id: The workflow with the conflict.
        expected_version: The version that was expected.
    """

    category = ErrorCategory.TRANSIENT

    def __init__(self, workflow_id: str, expected_version: int):
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for workflow {workflow_id}: "
            f"expected {expected_version}"
        )


class DatabaseError(CivicFlowError):
    """Raised when a persistence operation fails.

    Attributes:
        original_error: The underlying exception, if any.
    """

    category = ErrorCategory.ADMIN_INTERVENTION

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class InvalidOverrideError(CivicFlowError):
    """Raised when an override names a value the issue cannot take."""

    category = ErrorCategory.CALLER_ERROR
