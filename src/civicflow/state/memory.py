"""In-memory WorkflowStore for development and tests.

A single asyncio.Lock makes create, commit_step and restore atomic with
respect to each other, mirroring the transaction the PostgreSQL store uses.
States and records are copied on the way in and out so callers never share
mutable objects with the store.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from src.civicflow.audit.models import ProcessingStepRecord
from src.civicflow.errors import DatabaseError, NotFoundError, VersionConflictError
from src.civicflow.state.models import WorkflowState, WorkflowStatus


logger = logging.getLogger(__name__)


class InMemoryWorkflowStore:
    """WorkflowStore keeping everything in process memory."""

    def __init__(self) -> None:
        self._states: Dict[str, WorkflowState] = {}
        self._records: Dict[str, List[ProcessingStepRecord]] = defaultdict(list)
        self._by_issue: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _append(self, record: ProcessingStepRecord) -> ProcessingStepRecord:
        trail = self._records[record.workflow_id]
        stored = record.model_copy(update={"sequence": len(trail)})
        trail.append(stored)
        return stored

    async def create(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        async with self._lock:
            if state.workflow_id in self._states:
                raise DatabaseError(f"Workflow already exists: {state.workflow_id}")
            self._states[state.workflow_id] = state.model_copy(deep=True)
            self._by_issue[state.issue_id] = state.workflow_id
            return self._append(record)

    async def get(self, workflow_id: str) -> Optional[WorkflowState]:
        state = self._states.get(workflow_id)
        return state.model_copy(deep=True) if state else None

    async def get_by_issue(self, issue_id: str) -> Optional[WorkflowState]:
        workflow_id = self._by_issue.get(issue_id)
        if workflow_id is None:
            return None
        return await self.get(workflow_id)

    async def list_by_status(self, status: WorkflowStatus) -> List[WorkflowState]:
        states = [s for s in self._states.values() if s.status == status]
        states.sort(key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in states]

    async def commit_step(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        async with self._lock:
            current = self._states.get(state.workflow_id)
            if current is None:
                raise NotFoundError("workflow", state.workflow_id)
            if current.version != state.version - 1:
                logger.warning(
                    "Version conflict during workflow commit",
                    extra={
                        "workflow_id": state.workflow_id,
                        "expected_version": state.version - 1,
                        "stored_version": current.version,
                    },
                )
                raise VersionConflictError(state.workflow_id, state.version - 1)
            self._states[state.workflow_id] = state.model_copy(deep=True)
            return self._append(record)

    async def append_record(self, record: ProcessingStepRecord) -> ProcessingStepRecord:
        async with self._lock:
            if record.workflow_id not in self._states:
                raise NotFoundError("workflow", record.workflow_id)
            return self._append(record)

    async def restore(
        self, state: WorkflowState, record: ProcessingStepRecord
    ) -> ProcessingStepRecord:
        async with self._lock:
            if state.workflow_id not in self._states:
                raise NotFoundError("workflow", state.workflow_id)
            self._states[state.workflow_id] = state.model_copy(deep=True)
            return self._append(record)

    async def list_records(self, workflow_id: str) -> List[ProcessingStepRecord]:
        return list(self._records.get(workflow_id, []))

    async def list_records_for_issue(self, issue_id: str) -> List[ProcessingStepRecord]:
        workflow_id = self._by_issue.get(issue_id)
        if workflow_id is None:
            return []
        return list(self._records.get(workflow_id, []))
