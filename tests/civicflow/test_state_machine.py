"""Tests for workflow state transitions, audit replay and the in-memory store.

The central property: folding a workflow's audit trail with apply_record
reproduces the state that was committed step by step.
"""

from datetime import timedelta
from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from src.civicflow.agents.base import AgentType
from src.civicflow.audit.log import ExecutionLog
from src.civicflow.audit.models import ProcessingStepRecord, RecordKind
from src.civicflow.errors import (
    InvalidStateError,
    NotFoundError,
    VersionConflictError,
)
from src.civicflow.models import Issue
from src.civicflow.state.machine import (
    WorkflowStateMachine,
    apply_record,
    replay_records,
)
from src.civicflow.state.models import (
    StepOutcome,
    WorkflowState,
    WorkflowStatus,
    is_terminal_status,
    is_valid_transition,
)
from src.civicflow.workflow_config import WorkflowConfig

from tests.civicflow.factories import BASE_TIME, CrashingWorkflowStore, run_async


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _issue() -> Issue:
    return Issue(issue_id="issue-1", city_id="pune", text="Pothole on Station Road")


def _intake(workflow_id: str = "wf-1") -> ProcessingStepRecord:
    return ProcessingStepRecord(
        workflow_id=workflow_id,
        issue_id="issue-1",
        city_id="pune",
        kind=RecordKind.INTAKE,
        started_at=BASE_TIME,
        ended_at=BASE_TIME,
        reasoning="Issue accepted and tracked.",
    )


def _step_record(
    state: WorkflowState,
    succeeded: bool,
    minutes: int,
    flagged: bool = False,
    exhausted: bool = False,
) -> ProcessingStepRecord:
    step = state.current_step
    at = BASE_TIME + timedelta(minutes=minutes)
    last = state.cursor + 1 == len(state.steps)
    if succeeded:
        outcome = StepOutcome.FLAGGED if flagged else StepOutcome.SUCCEEDED
        status = WorkflowStatus.COMPLETED if last else WorkflowStatus.RUNNING
    elif exhausted:
        outcome, status = StepOutcome.ESCALATED, WorkflowStatus.ESCALATED
    else:
        outcome, status = StepOutcome.FAILED, WorkflowStatus.WAITING_RETRY
    return ProcessingStepRecord(
        workflow_id=state.workflow_id,
        issue_id=state.issue_id,
        city_id=state.city_id,
        kind=RecordKind.AGENT_STEP,
        agent_type=step.agent_type,
        step_index=state.cursor,
        attempt=step.attempts + 1,
        started_at=at,
        ended_at=at,
        output_payload={"result": {"step": state.cursor}} if succeeded else {},
        reasoning="step",
        success=succeeded,
        error=None if succeeded else "provider unavailable",
        outcome=outcome,
        resulting_status=status,
    )


def _retry_record(state: WorkflowState, minutes: int) -> ProcessingStepRecord:
    at = BASE_TIME + timedelta(minutes=minutes)
    return ProcessingStepRecord(
        workflow_id=state.workflow_id,
        issue_id=state.issue_id,
        city_id=state.city_id,
        kind=RecordKind.RETRY_REQUESTED,
        agent_type=state.current_step.agent_type,
        step_index=state.cursor,
        started_at=at,
        ended_at=at,
        reasoning="manual retry",
        resulting_status=WorkflowStatus.RUNNING,
        actor="operator",
    )


def _new_machine():
    store = CrashingWorkflowStore()
    machine = WorkflowStateMachine(store)
    return store, machine


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_terminal_statuses_have_no_transitions():
    assert is_terminal_status(WorkflowStatus.COMPLETED)
    assert is_terminal_status(WorkflowStatus.FAILED)
    assert not is_terminal_status(WorkflowStatus.ESCALATED)


def test_escalated_only_resumes_through_running():
    assert is_valid_transition(WorkflowStatus.ESCALATED, WorkflowStatus.RUNNING)
    assert not is_valid_transition(WorkflowStatus.ESCALATED, WorkflowStatus.COMPLETED)
    assert not is_valid_transition(WorkflowStatus.ESCALATED, WorkflowStatus.WAITING_RETRY)


def test_create_snapshots_config_and_writes_intake():
    async def scenario():
        store, machine = _new_machine()
        config = WorkflowConfig()
        state, record = await machine.create("wf-1", _issue(), config, _intake())
        return store, state, record, config

    store, state, record, config = run_async(scenario())
    assert state.version == 1
    assert [s.agent_type for s in state.steps] == config.sequence_order
    assert record.sequence == 0
    assert record.output_payload["config"]["sequence_order"] == [
        a.value for a in config.sequence_order
    ]


def test_success_advances_cursor_and_records_context():
    async def scenario():
        _, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        return await machine.commit(state, _step_record(state, True, 1))

    state, record = run_async(scenario())
    assert state.cursor == 1
    assert state.version == 2
    assert state.steps[0].outcome == StepOutcome.SUCCEEDED
    assert state.context == {"classifier": {"step": 0}}
    assert record.sequence == 1


def test_failure_keeps_cursor_and_counts_attempts():
    async def scenario():
        _, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        state, _ = await machine.commit(state, _step_record(state, False, 1))
        return state

    state = run_async(scenario())
    assert state.cursor == 0
    assert state.status == WorkflowStatus.WAITING_RETRY
    assert state.steps[0].attempts == 1
    assert state.steps[0].last_error == "provider unavailable"


def test_record_for_wrong_step_rejected():
    async def scenario():
        _, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        bad = _step_record(state, True, 1).model_copy(update={"step_index": 2})
        await machine.commit(state, bad)

    with pytest.raises(InvalidStateError):
        run_async(scenario())


def test_completed_workflow_rejects_further_records():
    config = WorkflowConfig(
        enabled_agents=[AgentType.CLASSIFIER], sequence_order=[AgentType.CLASSIFIER]
    )

    async def scenario():
        _, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), config, _intake())
        state, _ = await machine.commit(state, _step_record(state, True, 1))
        assert state.status == WorkflowStatus.COMPLETED
        assert state.current_step is None
        stale = _step_record(
            state.model_copy(update={"cursor": 0}), True, 2
        )
        apply_record(state, stale)

    with pytest.raises(InvalidStateError):
        run_async(scenario())


def test_stale_version_conflicts():
    async def scenario():
        _, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        await machine.commit(state, _step_record(state, False, 1))
        # Same starting state committed twice: the second writer is stale
        await machine.commit(state, _step_record(state, False, 2))

    with pytest.raises(VersionConflictError):
        run_async(scenario())


def test_get_unknown_workflow_raises_not_found():
    _, machine = _new_machine()
    with pytest.raises(NotFoundError):
        run_async(machine.get("missing"))


def test_duplicate_create_rejected():
    async def scenario():
        _, machine = _new_machine()
        await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())

    with pytest.raises(Exception, match="already exists"):
        run_async(scenario())


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


# Each action: "ok", "flag", "fail", "exhaust" (fail, then operator retry)
actions = st.lists(st.sampled_from(["ok", "flag", "fail", "exhaust"]), max_size=12)


@settings(max_examples=100, deadline=None)
@given(script=actions)
def test_replay_reproduces_committed_state(script: List[str]):
    async def scenario():
        store, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        minute = 0
        for action in script:
            if state.is_finished:
                break
            minute += 1
            if action in ("ok", "flag"):
                state, _ = await machine.commit(
                    state, _step_record(state, True, minute, flagged=action == "flag")
                )
            elif action == "fail":
                state, _ = await machine.commit(state, _step_record(state, False, minute))
            else:
                state, _ = await machine.commit(
                    state, _step_record(state, False, minute, exhausted=True)
                )
                minute += 1
                state, _ = await machine.commit(state, _retry_record(state, minute))
        return state, await store.list_records("wf-1")

    committed, records = run_async(scenario())
    replayed = replay_records(records)

    assert replayed.outcome_snapshot() == committed.outcome_snapshot()
    assert replayed.version == committed.version
    assert [r.sequence for r in records] == list(range(len(records)))


def test_replay_ignores_non_state_records():
    async def scenario():
        store, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        state, _ = await machine.commit(state, _step_record(state, True, 1))
        await ExecutionLog(store).append(
            ProcessingStepRecord(
                workflow_id="wf-1",
                issue_id="issue-1",
                city_id="pune",
                kind=RecordKind.STATUS_CHANGE,
                reasoning="processing",
            )
        )
        return state, await store.list_records("wf-1")

    committed, records = run_async(scenario())
    assert len(records) == 3
    assert replay_records(records).outcome_snapshot() == committed.outcome_snapshot()


def test_replay_requires_intake_first():
    with pytest.raises(InvalidStateError):
        replay_records([])


def test_recover_restores_lagging_state():
    async def scenario():
        store, machine = _new_machine()
        initial, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        state, _ = await machine.commit(initial, _step_record(initial, True, 1))
        state, _ = await machine.commit(state, _step_record(state, True, 2))
        # Simulated crash: trail has both steps, stored state only the first
        store.overwrite_state(initial)
        recovered, restored = await machine.recover("wf-1")
        return state, recovered, restored, await store.list_records("wf-1"), await store.get("wf-1")

    committed, recovered, restored, records, stored = run_async(scenario())
    assert restored is True
    assert recovered.outcome_snapshot() == committed.outcome_snapshot()
    assert stored.cursor == 2
    assert records[-1].kind == RecordKind.RECOVERY


def test_recover_is_a_no_op_when_consistent():
    async def scenario():
        store, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        await machine.commit(state, _step_record(state, True, 1))
        _, restored = await machine.recover("wf-1")
        return restored, await store.list_records("wf-1")

    restored, records = run_async(scenario())
    assert restored is False
    assert all(r.kind != RecordKind.RECOVERY for r in records)


# ---------------------------------------------------------------------------
# Execution log
# ---------------------------------------------------------------------------


def test_execution_log_refuses_state_records():
    async def scenario():
        store, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        await ExecutionLog(store).append(_step_record(state, True, 1))

    with pytest.raises(InvalidStateError):
        run_async(scenario())


def test_records_are_immutable():
    record = _intake()
    with pytest.raises(Exception):
        record.reasoning = "rewritten"


def test_failed_record_requires_error():
    with pytest.raises(ValueError):
        ProcessingStepRecord(
            workflow_id="wf-1",
            issue_id="issue-1",
            city_id="pune",
            kind=RecordKind.STATUS_CHANGE,
            reasoning="x",
            success=False,
        )


def test_latest_decision_prefers_override():
    async def scenario():
        store, machine = _new_machine()
        state, _ = await machine.create("wf-1", _issue(), WorkflowConfig(), _intake())
        state, step = await machine.commit(state, _step_record(state, True, 1))
        log = ExecutionLog(store)
        before = await log.latest_decision("issue-1", "classification")
        override = await log.append(
            ProcessingStepRecord(
                workflow_id="wf-1",
                issue_id="issue-1",
                city_id="pune",
                kind=RecordKind.OVERRIDE,
                input_payload={"field": "classification"},
                reasoning="Wrong department",
                actor="admin",
                references_record_id=step.record_id,
            )
        )
        after = await log.latest_decision("issue-1", "classification")
        status = await log.latest_decision("issue-1", "status")
        return step, before, override, after, status

    step, before, override, after, status = run_async(scenario())
    assert before.record_id == step.record_id
    assert after.record_id == override.record_id
    assert status.kind == RecordKind.INTAKE
