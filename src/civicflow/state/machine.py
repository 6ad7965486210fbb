"""Workflow state machine implementation.

The state of a workflow is a fold over its audit trail: ``apply_record``
computes the next WorkflowState from the current one and one record, and
the orchestrator uses the very same function on the live path. Replaying a
workflow's records therefore reconstructs its exact state, which is how
crash recovery re-derives state when the stored copy lags the trail.

The state machine depends on a WorkflowStore for persistence; a step's new
state and its audit record are committed in one transaction.
"""

import logging
from typing import Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from src.civicflow.audit.models import ProcessingStepRecord, RecordKind, STATE_KINDS
from src.civicflow.errors import InvalidStateError, NotFoundError, VersionConflictError
from src.civicflow.models import Issue
from src.civicflow.state.models import (
    ADVANCING_OUTCOMES,
    StepOutcome,
    StepState,
    WorkflowState,
    WorkflowStatus,
    is_valid_transition,
)
from src.civicflow.workflow_config import WorkflowConfig


logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowStore(Protocol):
    """Protocol for durable workflow state and its audit trail.

    Implementations must make ``create`` and ``commit_step`` atomic: the
    state write and the record append become visible together or not at all.
    Records get their per-workflow ``sequence`` assigned on append.
    """

    async def create(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        """Insert a new workflow together with its intake record."""
        ...

    async def get(self, workflow_id: str) -> Optional[WorkflowState]:
        """Get a workflow by id, or None."""
        ...

    async def get_by_issue(self, issue_id: str) -> Optional[WorkflowState]:
        """Get the workflow of an issue, or None."""
        ...

    async def list_by_status(self, status: WorkflowStatus) -> List[WorkflowState]:
        """List workflows in a given status."""
        ...

    async def commit_step(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        """Write ``state`` (version must be stored version + 1) and append ``record``.

        Raises:
            VersionConflictError: If the stored version moved on.
        """
        ...

    async def append_record(self, record: ProcessingStepRecord) -> ProcessingStepRecord:
        """Append a record that does not change workflow state."""
        ...

    async def restore(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        """Overwrite the stored state with a replayed one and append a recovery record."""
        ...

    async def list_records(self, workflow_id: str) -> List[ProcessingStepRecord]:
        """Records of a workflow in sequence order."""
        ...

    async def list_records_for_issue(self, issue_id: str) -> List[ProcessingStepRecord]:
        """Records of an issue in sequence order."""
        ...


def initial_state(
    workflow_id: str,
    issue: Issue,
    config: WorkflowConfig,
    created_at=None,
) -> WorkflowState:
    """Build the state of a new workflow from its config snapshot."""
    state = WorkflowState(
        workflow_id=workflow_id,
        issue_id=issue.issue_id,
        city_id=issue.city_id,
        steps=[StepState(agent_type=agent) for agent in config.sequence_order],
        config=config,
    )
    if created_at is not None:
        state = state.model_copy(update={"created_at": created_at, "updated_at": created_at})
    return state


def intake_payload(state: WorkflowState) -> dict:
    """Output payload of the intake record; enough to rebuild the initial state."""
    return {
        "workflow_id": state.workflow_id,
        "config": state.config.model_dump(mode="json"),
    }


def state_from_intake(record: ProcessingStepRecord) -> WorkflowState:
    """Rebuild a workflow's initial state from its intake record."""
    if record.kind != RecordKind.INTAKE:
        raise InvalidStateError(
            f"Audit trail of workflow {record.workflow_id} does not start with intake"
        )
    config = WorkflowConfig.model_validate(record.output_payload["config"])
    return WorkflowState(
        workflow_id=record.workflow_id,
        issue_id=record.issue_id,
        city_id=record.city_id,
        steps=[StepState(agent_type=agent) for agent in config.sequence_order],
        config=config,
        created_at=record.started_at,
        updated_at=record.started_at,
    )


def apply_record(state: WorkflowState, record: ProcessingStepRecord) -> WorkflowState:
    """Return the state that results from applying ``record`` to ``state``.

    Records of kinds that do not affect workflow state return ``state``
    unchanged. Every applied record bumps the version by one.

    Raises:
        InvalidStateError: If the record does not fit the state (wrong
            workflow, wrong step, or a forbidden status transition).
    """
    if record.kind not in STATE_KINDS:
        return state

    if record.workflow_id != state.workflow_id:
        raise InvalidStateError(
            f"Record {record.record_id} belongs to workflow {record.workflow_id}, "
            f"not {state.workflow_id}"
        )
    if record.step_index != state.cursor:
        raise InvalidStateError(
            f"Record for step {record.step_index} does not match cursor {state.cursor} "
            f"of workflow {state.workflow_id}"
        )
    step = state.current_step
    if step is None or step.agent_type != record.agent_type:
        raise InvalidStateError(
            f"Step {record.step_index} of workflow {state.workflow_id} is not "
            f"{record.agent_type.value if record.agent_type else None}"
        )
    if not is_valid_transition(state.status, record.resulting_status):
        raise InvalidStateError(
            f"Workflow {state.workflow_id} cannot move from {state.status.value} "
            f"to {record.resulting_status.value}"
        )

    steps = [s.model_copy() for s in state.steps]
    context = dict(state.context)
    cursor = state.cursor
    error = state.error

    if record.kind == RecordKind.RETRY_REQUESTED:
        steps[cursor] = step.model_copy(
            update={"outcome": StepOutcome.PENDING, "attempts_in_run": 0}
        )
    else:
        updated = step.model_copy(
            update={
                "outcome": record.outcome,
                "attempts": step.attempts + 1,
                "attempts_in_run": step.attempts_in_run + 1,
                "last_error": record.error if not record.success else step.last_error,
            }
        )
        steps[cursor] = updated
        if record.outcome in ADVANCING_OUTCOMES:
            context[step.agent_type.value] = record.output_payload.get("result", {})
            cursor += 1
        if record.resulting_status == WorkflowStatus.FAILED:
            error = record.error

    return state.model_copy(
        update={
            "steps": steps,
            "cursor": cursor,
            "status": record.resulting_status,
            "context": context,
            "error": error,
            "updated_at": record.ended_at,
            "version": state.version + 1,
        }
    )


def replay_records(records: Iterable[ProcessingStepRecord]) -> WorkflowState:
    """Reconstruct a workflow's state from its complete audit trail.

    Records are replayed in timestamp order, with the sequence number
    breaking ties.
    """
    ordered = sorted(records, key=lambda r: (r.sequence, r.started_at))
    if not ordered:
        raise InvalidStateError("Cannot replay an empty audit trail")

    state = state_from_intake(ordered[0])
    for record in ordered[1:]:
        state = apply_record(state, record)
    return state


class WorkflowStateMachine:
    """Creates workflows and commits step records against a WorkflowStore.

    Attributes:
        store: The workflow store for persistence.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def create(
        self,
        workflow_id: str,
        issue: Issue,
        config: WorkflowConfig,
        intake_record: ProcessingStepRecord,
    ) -> Tuple[WorkflowState, ProcessingStepRecord]:
        """Persist a new workflow and its intake record in one transaction."""
        state = initial_state(workflow_id, issue, config, created_at=intake_record.started_at)
        if not intake_record.output_payload:
            intake_record = intake_record.model_copy(
                update={"output_payload": intake_payload(state)}
            )

        logger.info(
            "Creating workflow state",
            extra={
                "workflow_id": workflow_id,
                "issue_id": issue.issue_id,
                "city_id": issue.city_id,
                "steps": [a.value for a in config.sequence_order],
            },
        )

        stored = await self.store.create(state, intake_record)
        return state, stored

    async def get(self, workflow_id: str) -> WorkflowState:
        """Get a workflow.

        Raises:
            NotFoundError: If the workflow does not exist.
        """
        state = await self.store.get(workflow_id)
        if state is None:
            raise NotFoundError("workflow", workflow_id)
        return state

    async def commit(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> Tuple[WorkflowState, ProcessingStepRecord]:
        """Apply a state-changing record and persist both atomically.

        Raises:
            InvalidStateError: If the record does not fit the state.
            VersionConflictError: If a concurrent update occurred.
        """
        updated = apply_record(state, record)

        logger.info(
            "Committing workflow step",
            extra={
                "workflow_id": state.workflow_id,
                "record_kind": record.kind.value,
                "agent_type": record.agent_type.value if record.agent_type else None,
                "from_status": state.status.value,
                "to_status": updated.status.value,
                "cursor": updated.cursor,
                "version": updated.version,
            },
        )

        stored = await self.store.commit_step(updated, record)
        return updated, stored

    async def list_by_status(self, status: WorkflowStatus) -> List[WorkflowState]:
        return await self.store.list_by_status(status)

    async def recover(self, workflow_id: str) -> Tuple[WorkflowState, bool]:
        """Re-derive a workflow's state from its audit trail.

        Returns the authoritative state and whether the stored copy had to
        be replaced.

        Raises:
            NotFoundError: If the workflow does not exist.
        """
        stored = await self.get(workflow_id)
        records = await self.store.list_records(workflow_id)
        replayed = replay_records(records)

        if replayed.outcome_snapshot() == stored.outcome_snapshot():
            return stored, False

        if replayed.version < stored.version:
            raise VersionConflictError(workflow_id, replayed.version)

        logger.warning(
            "Stored workflow state lags its audit trail; restoring from replay",
            extra={
                "workflow_id": workflow_id,
                "stored_version": stored.version,
                "replayed_version": replayed.version,
            },
        )

        recovery = ProcessingStepRecord(
            workflow_id=workflow_id,
            issue_id=replayed.issue_id,
            city_id=replayed.city_id,
            kind=RecordKind.RECOVERY,
            input_payload={"stored_version": stored.version},
            output_payload={"replayed_version": replayed.version},
            reasoning=(
                f"Stored state at version {stored.version} replaced by audit replay "
                f"at version {replayed.version}."
            ),
        )
        await self.store.restore(replayed, recovery)
        return replayed, True
