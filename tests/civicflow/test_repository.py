"""Unit tests for the PostgreSQL workflow store against a fake asyncpg pool.

Queries against a live database belong in integration tests; these cover
row mapping, sequence assignment and the optimistic-locking checks.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Tuple

import pytest

from src.civicflow.agents.base import AgentType
from src.civicflow.audit.models import ProcessingStepRecord, RecordKind
from src.civicflow.errors import DatabaseError, NotFoundError, VersionConflictError
from src.civicflow.models import Issue
from src.civicflow.state.machine import initial_state
from src.civicflow.state.models import StepOutcome, WorkflowStatus
from src.civicflow.state.repository import PostgresWorkflowStore, _row_to_state
from src.civicflow.workflow_config import WorkflowConfig

from tests.civicflow.factories import BASE_TIME, run_async


class FakeConnection:
    """Answers the store's queries from canned values and records writes."""

    def __init__(self, rows_updated: int = 1, next_sequence: int = 0, workflow_exists: bool = True):
        self.rows_updated = rows_updated
        self.next_sequence = next_sequence
        self.workflow_exists = workflow_exists
        self.executed: List[Tuple[str, Tuple[Any, ...]]] = []

    @asynccontextmanager
    async def transaction(self):
        yield

    async def execute(self, query: str, *args: Any) -> str:
        self.executed.append((query, args))
        if query.strip().startswith("UPDATE"):
            return f"UPDATE {self.rows_updated}"
        return "INSERT 0 1"

    async def fetchval(self, query: str, *args: Any) -> Any:
        if "FOR UPDATE" in query:
            return 1 if self.workflow_exists else None
        if "MAX(sequence)" in query:
            return self.next_sequence
        return 1


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _store(conn: FakeConnection) -> PostgresWorkflowStore:
    store = PostgresWorkflowStore("postgresql://civic@localhost/civic")
    store._pool = FakePool(conn)
    return store


def _state(version: int = 1):
    issue = Issue(issue_id="issue-1", city_id="pune", text="Pothole on Station Road")
    state = initial_state("wf-1", issue, WorkflowConfig(), created_at=BASE_TIME)
    return state.model_copy(update={"version": version})


def _record(kind: RecordKind = RecordKind.INTAKE) -> ProcessingStepRecord:
    if kind == RecordKind.AGENT_STEP:
        return ProcessingStepRecord(
            workflow_id="wf-1",
            issue_id="issue-1",
            city_id="pune",
            kind=kind,
            agent_type=AgentType.CLASSIFIER,
            step_index=0,
            attempt=1,
            started_at=BASE_TIME,
            ended_at=BASE_TIME,
            reasoning="Classified as Roads & Potholes.",
            outcome=StepOutcome.SUCCEEDED,
            resulting_status=WorkflowStatus.RUNNING,
        )
    return ProcessingStepRecord(
        workflow_id="wf-1",
        issue_id="issue-1",
        city_id="pune",
        kind=kind,
        started_at=BASE_TIME,
        ended_at=BASE_TIME,
        reasoning="Issue accepted and tracked.",
    )


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def test_row_to_state_decodes_json_text_and_naive_timestamps():
    state = _state()
    naive = datetime(2024, 3, 1, 9, 0)
    row = {
        "workflow_id": state.workflow_id,
        "issue_id": state.issue_id,
        "city_id": state.city_id,
        "status": "waiting_retry",
        "step_cursor": 1,
        "steps": json.dumps([s.model_dump(mode="json") for s in state.steps]),
        "config": state.config.model_dump_json(),
        "context": None,
        "error": None,
        "created_at": naive,
        "updated_at": naive,
        "version": 3,
    }

    restored = _row_to_state(row)

    assert restored.status == WorkflowStatus.WAITING_RETRY
    assert restored.cursor == 1
    assert [s.agent_type for s in restored.steps] == state.config.sequence_order
    assert restored.config == state.config
    assert restored.context == {}
    assert restored.created_at == BASE_TIME
    assert restored.version == 3


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def test_create_assigns_next_sequence():
    conn = FakeConnection(next_sequence=0)

    stored = run_async(_store(conn).create(_state(), _record()))

    assert stored.sequence == 0
    assert "INSERT INTO workflow_states" in conn.executed[0][0]
    assert "INSERT INTO processing_records" in conn.executed[1][0]
    assert json.loads(conn.executed[1][1][-1])["record_id"] == stored.record_id


def test_commit_step_checks_previous_version():
    conn = FakeConnection(rows_updated=1, next_sequence=4)

    stored = run_async(_store(conn).commit_step(_state(version=5), _record(RecordKind.AGENT_STEP)))

    update_args = conn.executed[0][1]
    assert update_args[-1] == 4
    assert stored.sequence == 4


def test_commit_step_raises_version_conflict_and_skips_record():
    conn = FakeConnection(rows_updated=0)

    with pytest.raises(VersionConflictError) as exc_info:
        run_async(_store(conn).commit_step(_state(version=2), _record(RecordKind.AGENT_STEP)))

    assert exc_info.value.expected_version == 1
    assert len(conn.executed) == 1


def test_append_record_requires_workflow():
    conn = FakeConnection(workflow_exists=False)

    with pytest.raises(NotFoundError):
        run_async(_store(conn).append_record(_record(RecordKind.STATUS_CHANGE)))

    assert conn.executed == []


def test_restore_of_unknown_workflow_raises_not_found():
    conn = FakeConnection(rows_updated=0)

    with pytest.raises(NotFoundError):
        run_async(_store(conn).restore(_state(), _record()))


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------


def test_operations_before_connect_raise_database_error():
    store = PostgresWorkflowStore("postgresql://civic@localhost/civic")

    with pytest.raises(DatabaseError):
        run_async(store.get("wf-1"))


def test_health_check_reports_unconnected_pool_as_unhealthy():
    store = PostgresWorkflowStore("postgresql://civic@localhost/civic")

    assert run_async(store.health_check()) is False
    assert run_async(_store(FakeConnection()).health_check()) is True
