"""Execution log facade over the workflow store's audit trail.

State-changing records (agent steps, retry requests) are committed by the
state machine together with the new state. Everything else (status changes,
overrides) is appended here. Reads return records in sequence order.
"""

import logging
from typing import Dict, List, Optional

from src.civicflow.agents.base import AgentType
from src.civicflow.audit.models import STATE_KINDS, ProcessingStepRecord, RecordKind
from src.civicflow.errors import InvalidStateError
from src.civicflow.state.machine import WorkflowStore


logger = logging.getLogger(__name__)


# Overridable issue fields and the agent whose decision they hold
DECISION_AGENTS: Dict[str, Optional[AgentType]] = {
    "classification": AgentType.CLASSIFIER,
    "priority": AgentType.PRIORITY_SCORER,
    "duplicate_of": AgentType.DUPLICATE_DETECTOR,
    "status": None,
}


class ExecutionLog:
    """Append and query audit records."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def append(self, record: ProcessingStepRecord) -> ProcessingStepRecord:
        """Append a record that does not change workflow state.

        Raises:
            InvalidStateError: If the record kind must go through the state machine.
        """
        if record.kind in STATE_KINDS or record.kind == RecordKind.INTAKE:
            raise InvalidStateError(
                f"{record.kind.value} records are committed with workflow state"
            )
        stored = await self.store.append_record(record)
        logger.info(
            "Appended audit record",
            extra={
                "workflow_id": stored.workflow_id,
                "issue_id": stored.issue_id,
                "record_kind": stored.kind.value,
                "sequence": stored.sequence,
            },
        )
        return stored

    async def for_workflow(self, workflow_id: str) -> List[ProcessingStepRecord]:
        return await self.store.list_records(workflow_id)

    async def for_issue(self, issue_id: str) -> List[ProcessingStepRecord]:
        return await self.store.list_records_for_issue(issue_id)

    async def latest_decision(
        self, issue_id: str, field: str
    ) -> Optional[ProcessingStepRecord]:
        """The record currently holding the decision on ``field`` of an issue.

        That is the most recent override of the field if any, otherwise the
        most recent successful agent step deciding it (for ``status``, the
        most recent status change, falling back to intake).
        """
        agent_type = DECISION_AGENTS[field]
        latest = None
        for record in await self.for_issue(issue_id):
            if record.kind == RecordKind.OVERRIDE:
                if record.input_payload.get("field") == field:
                    latest = record
            elif agent_type is not None:
                if (
                    record.kind == RecordKind.AGENT_STEP
                    and record.success
                    and record.agent_type == agent_type
                ):
                    latest = record
            elif record.kind in (RecordKind.STATUS_CHANGE, RecordKind.INTAKE):
                latest = record
        return latest
