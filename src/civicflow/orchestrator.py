"""Workflow orchestrator driving issues through their agent steps.

Accepts an issue, snapshots the city's WorkflowConfig into a new
WorkflowState and walks the configured sequence:

    intake → step 0 → step 1 → ... → completed

Every agent attempt produces exactly one audit record, committed together
with the resulting state. Steps before the cursor never run again, so a
workflow interrupted anywhere resumes from its persisted cursor.

Failure handling:
- Provider errors and timeouts are retried with backoff; exhausting the
  attempt budget parks the workflow as escalated (not failed).
- Contract violations (invalid agent output, no agent registered) fail the
  workflow and raise WorkflowFailed.
- Low confidence is not an error: the step is flagged and the issue gets
  a manual-review marker.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from src.civicflow.agents.base import AgentRegistry, AgentRequest, AgentResponse, AgentType
from src.civicflow.agents.models import (
    Classification,
    DuplicateDetectionResult,
    InsightResult,
    PriorityScore,
    SimilarityResult,
)
from src.civicflow.audit.log import ExecutionLog
from src.civicflow.audit.models import OverrideRequest, ProcessingStepRecord, RecordKind
from src.civicflow.errors import (
    AgentExecutionError,
    CivicFlowError,
    InvalidOverrideError,
    InvalidStateError,
    NotFoundError,
    WorkflowFailed,
)
from src.civicflow.escalation import EscalationReason, EscalationSink, EscalationTicket
from src.civicflow.events.emitter import EventEmitter, NullEventEmitter
from src.civicflow.events.models import EventType, WorkflowEvent
from src.civicflow.intake import check_submission
from src.civicflow.models import Issue, IssueStatus, IssueSubmission, SubmissionReceipt
from src.civicflow.policy import ConfidenceOutcome, evaluate_confidence
from src.civicflow.state.machine import WorkflowStateMachine
from src.civicflow.state.models import (
    RESUMABLE_STATUSES,
    RETRYABLE_STATUSES,
    StepOutcome,
    WorkflowState,
    WorkflowStatus,
)
from src.civicflow.storage import IssueStore
from src.civicflow.workflow_config import WorkflowConfig, WorkflowConfigRegistry


logger = logging.getLogger(__name__)


DEFAULT_AGENT_TIMEOUT = 30.0
DEFAULT_MAX_CONCURRENT_STEPS = 8

# Statuses set by the city that workflow progress must not overwrite
ADMINISTRATIVE_STATUSES = frozenset({IssueStatus.RESOLVED, IssueStatus.CLOSED})

# Result model each agent role must produce
RESULT_MODELS = {
    AgentType.CLASSIFIER: Classification,
    AgentType.PRIORITY_SCORER: PriorityScore,
    AgentType.DUPLICATE_DETECTOR: DuplicateDetectionResult,
    AgentType.INSIGHT_GENERATOR: InsightResult,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _WorkflowLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class WorkflowOrchestrator:
    """Sequences agent steps for issues and owns their lifecycle.

    Attributes:
        state_machine: Persists workflow state with its audit records.
        execution_log: Appends and reads non-state audit records.
        issue_store: Storage collaborator for issues.
        agents: Agent registry, one provider per agent type.
        configs: Installed per-city workflow configs.
        event_emitter: Observability sink.
        escalation_sink: Human queue for escalations.
        agent_timeout: Seconds allowed per agent attempt.
        dispatcher: Optional IssueDispatcher that processes accepted issues.
    """

    def __init__(
        self,
        state_machine: WorkflowStateMachine,
        issue_store: IssueStore,
        agents: AgentRegistry,
        configs: Optional[WorkflowConfigRegistry] = None,
        event_emitter: Optional[EventEmitter] = None,
        escalation_sink: Optional[EscalationSink] = None,
        agent_timeout: float = DEFAULT_AGENT_TIMEOUT,
        max_concurrent_steps: int = DEFAULT_MAX_CONCURRENT_STEPS,
        sleep=asyncio.sleep,
    ):
        self.state_machine = state_machine
        self.execution_log = ExecutionLog(state_machine.store)
        self.issue_store = issue_store
        self.agents = agents
        self.configs = configs or WorkflowConfigRegistry()
        self.event_emitter = event_emitter or NullEventEmitter()
        self.escalation_sink = escalation_sink
        self.agent_timeout = agent_timeout
        self.dispatcher = None
        self._semaphore = asyncio.Semaphore(max_concurrent_steps)
        self._locks: Dict[str, _WorkflowLock] = {}
        self._sleep = sleep

    @asynccontextmanager
    async def _workflow_lock(self, workflow_id: str):
        """Serialize work on one workflow; the entry is dropped once unused."""
        entry = self._locks.get(workflow_id)
        if entry is None:
            entry = self._locks[workflow_id] = _WorkflowLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[workflow_id]

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def submit_issue(self, submission: IssueSubmission) -> SubmissionReceipt:
        """Accept a submission, create its workflow and hand it to the dispatcher.

        Never rejects: an incomplete submission is tracked with status
        needs_more_detail and the receipt carries prompts for the citizen.
        Returns without waiting for processing.
        """
        issue = Issue.from_submission(submission)
        issue, state = await self._accept(issue, submission.model_dump(mode="json"))

        if self.dispatcher is not None:
            await self.dispatcher.enqueue(issue.issue_id)

        return SubmissionReceipt(
            tracking_id=issue.issue_id,
            workflow_id=state.workflow_id,
            status=issue.status,
            prompts=issue.missing_details,
        )

    async def _accept(
        self, issue: Issue, submitted: Dict[str, Any]
    ) -> Tuple[Issue, WorkflowState]:
        """Store the issue and create its workflow with the intake record."""
        problem = check_submission(
            IssueSubmission(
                city_id=issue.city_id,
                text=issue.text,
                language=issue.language,
                location=issue.location,
                submitted_at=issue.submitted_at,
            )
        )
        config = self.configs.get(issue.city_id)
        workflow_id = str(uuid.uuid4())
        updates: Dict[str, Any] = {"workflow_id": workflow_id}
        if problem is not None:
            updates["status"] = IssueStatus.NEEDS_MORE_DETAIL
            updates["missing_details"] = problem.prompts
        issue = issue.model_copy(update=updates)

        existing = await self.issue_store.retrieve(issue.city_id, issue.issue_id)
        if existing is None:
            await self.issue_store.store(issue)
        else:
            issue = await self.issue_store.apply_changes(issue.city_id, issue.issue_id, updates)

        reasoning = "Issue accepted and tracked."
        if problem is not None:
            reasoning += " Citizen prompted for more detail: " + " ".join(problem.prompts)

        intake = ProcessingStepRecord(
            workflow_id=workflow_id,
            issue_id=issue.issue_id,
            city_id=issue.city_id,
            kind=RecordKind.INTAKE,
            input_payload=submitted,
            reasoning=reasoning,
        )
        state, _ = await self.state_machine.create(workflow_id, issue, config, intake)

        logger.info(
            "Issue accepted",
            extra={
                "issue_id": issue.issue_id,
                "workflow_id": workflow_id,
                "city_id": issue.city_id,
                "status": issue.status.value,
            },
        )
        await self._emit(
            EventType.WORKFLOW_STARTED,
            state,
            {"steps": [a.value for a in config.sequence_order]},
        )
        return issue, state

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_issue(self, issue: Union[Issue, str]) -> Issue:
        """Run an issue's workflow to completion or until it parks.

        Accepts an Issue (creating its workflow when absent) or the id of
        an accepted issue. Returns the issue as stored afterwards; an
        escalated workflow leaves it pending_intervention.

        Raises:
            NotFoundError: If an issue id is unknown.
            WorkflowFailed: If a non-retryable error failed the workflow.
        """
        if isinstance(issue, str):
            state = await self.state_machine.store.get_by_issue(issue)
            if state is None:
                raise NotFoundError("issue", issue)
        else:
            state = await self.state_machine.store.get_by_issue(issue.issue_id)
            if state is None:
                _, state = await self._accept(issue, issue.to_payload())

        state = await self._run(state.workflow_id)
        return await self._require_issue(state.city_id, state.issue_id)

    async def _run(self, workflow_id: str) -> WorkflowState:
        async with self._workflow_lock(workflow_id):
            state = await self.state_machine.get(workflow_id)
            if state.status not in RESUMABLE_STATUSES:
                return state

            await self._set_issue_status(state, IssueStatus.PROCESSING, "Agent workflow running.")
            while state.current_step is not None and state.status in RESUMABLE_STATUSES:
                state = await self._execute_step(state)

            if state.status == WorkflowStatus.COMPLETED:
                await self._finish(state)
            return state

    async def _execute_step(self, state: WorkflowState) -> WorkflowState:
        """Run the step at the cursor until it advances, escalates or fails."""
        step = state.current_step
        agent_type = step.agent_type
        config = state.config

        try:
            agent = self.agents.get(agent_type)
        except KeyError as e:
            return await self._fail_workflow(state, _now(), str(e))

        while True:
            step = state.current_step
            issue = await self._require_issue(state.city_id, state.issue_id)
            started = _now()
            try:
                request = AgentRequest(
                    issue=issue,
                    context=state.context,
                    domains=config.domains,
                    similarity_threshold=config.similarity_threshold,
                )
                async with self._semaphore:
                    response = await asyncio.wait_for(
                        agent.invoke(request), timeout=self.agent_timeout
                    )
                RESULT_MODELS[agent_type].model_validate(response.result)
            except asyncio.TimeoutError as e:
                failure = AgentExecutionError(
                    agent_type.value,
                    f"timed out after {self.agent_timeout}s",
                    cause=e,
                    timed_out=True,
                )
            except AgentExecutionError as e:
                failure = e
            except ValidationError as e:
                return await self._fail_workflow(
                    state, started, f"{agent_type.value} returned an invalid result: {e}"
                )
            except CivicFlowError as e:
                return await self._fail_workflow(state, started, f"{agent_type.value}: {e}")
            except Exception as e:
                failure = AgentExecutionError(agent_type.value, str(e), cause=e)
            else:
                return await self._accept_result(state, response, started)

            attempts_in_run = step.attempts_in_run + 1
            if config.retry.should_retry(attempts_in_run):
                state = await self._record_failure(
                    state, failure, started, StepOutcome.FAILED, WorkflowStatus.WAITING_RETRY
                )
                delay = config.retry.backoff(attempts_in_run)
                logger.info(
                    "Retrying agent step",
                    extra={
                        "workflow_id": state.workflow_id,
                        "agent_type": agent_type.value,
                        "attempt": attempts_in_run,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
                continue

            state = await self._record_failure(
                state, failure, started, StepOutcome.ESCALATED, WorkflowStatus.ESCALATED
            )
            await self._escalate_exhausted(state, agent_type, failure)
            return state

    async def _accept_result(
        self, state: WorkflowState, response: AgentResponse, started: datetime
    ) -> WorkflowState:
        """Apply the confidence policy to a result and commit the step."""
        step = state.current_step
        agent_type = step.agent_type
        config = state.config
        threshold = config.threshold_for(agent_type)
        verdict = evaluate_confidence(
            response.confidence,
            threshold,
            config.escalation_rules.low_confidence_floor,
        )
        outcome = StepOutcome.SUCCEEDED if verdict == ConfidenceOutcome.ACCEPT else StepOutcome.FLAGGED
        last_step = state.cursor + 1 == len(state.steps)

        record = ProcessingStepRecord(
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            kind=RecordKind.AGENT_STEP,
            agent_type=agent_type,
            step_index=state.cursor,
            attempt=step.attempts + 1,
            started_at=started,
            ended_at=max(_now(), started),
            input_payload={"context": state.context},
            output_payload=response.model_dump(mode="json"),
            confidence=response.confidence,
            reasoning=response.reasoning,
            outcome=outcome,
            resulting_status=WorkflowStatus.COMPLETED if last_step else WorkflowStatus.RUNNING,
        )
        updated, _ = await self.state_machine.commit(state, record)

        await self._write_step_result(updated, agent_type, response.result)
        await self._emit(
            EventType.STEP_COMPLETED,
            updated,
            {
                "agent_type": agent_type.value,
                "attempt": record.attempt,
                "outcome": outcome.value,
                "confidence": response.confidence,
                "latency_seconds": response.latency_seconds,
            },
        )

        if verdict == ConfidenceOutcome.ESCALATE:
            await self._notify(
                updated,
                EscalationReason.LOW_CONFIDENCE,
                f"{agent_type.value} confidence {response.confidence:.2f} is below the "
                f"escalation floor {config.escalation_rules.low_confidence_floor:.2f}.",
                agent_type,
            )

        if (
            agent_type == AgentType.PRIORITY_SCORER
            and config.escalation_rules.route_priority_escalations
            and response.result.get("escalation_required")
        ):
            await self._notify(
                updated,
                EscalationReason.HIGH_PRIORITY,
                f"Severity {response.result.get('severity')} / urgency "
                f"{response.result.get('urgency')} requires escalation.",
                agent_type,
            )
        return updated

    async def _record_failure(
        self,
        state: WorkflowState,
        failure: AgentExecutionError,
        started: datetime,
        outcome: StepOutcome,
        resulting_status: WorkflowStatus,
    ) -> WorkflowState:
        step = state.current_step
        record = ProcessingStepRecord(
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            kind=RecordKind.AGENT_STEP,
            agent_type=step.agent_type,
            step_index=state.cursor,
            attempt=step.attempts + 1,
            started_at=started,
            ended_at=max(_now(), started),
            input_payload={"context": state.context},
            confidence=0.0,
            reasoning=f"Attempt {step.attempts_in_run + 1} of {step.agent_type.value} failed.",
            success=False,
            error=failure.message,
            outcome=outcome,
            resulting_status=resulting_status,
        )
        updated, _ = await self.state_machine.commit(state, record)

        logger.warning(
            "Agent step failed",
            extra={
                "workflow_id": state.workflow_id,
                "agent_type": step.agent_type.value,
                "attempt": record.attempt,
                "timed_out": failure.timed_out,
                "error": failure.message,
            },
        )
        await self._emit(
            EventType.TIMEOUT if failure.timed_out else EventType.STEP_FAILED,
            updated,
            {
                "agent_type": step.agent_type.value,
                "attempt": record.attempt,
                "error": failure.message,
                "latency_seconds": record.duration_seconds,
            },
        )
        return updated

    async def _fail_workflow(
        self, state: WorkflowState, started: datetime, reason: str
    ) -> WorkflowState:
        """Record a non-retryable failure, fail the workflow and raise."""
        step = state.current_step
        record = ProcessingStepRecord(
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            kind=RecordKind.AGENT_STEP,
            agent_type=step.agent_type,
            step_index=state.cursor,
            attempt=step.attempts + 1,
            started_at=started,
            ended_at=max(_now(), started),
            confidence=0.0,
            reasoning=f"{step.agent_type.value} cannot complete; workflow failed.",
            success=False,
            error=reason,
            outcome=StepOutcome.FAILED,
            resulting_status=WorkflowStatus.FAILED,
        )
        updated, _ = await self.state_machine.commit(state, record)

        logger.error(
            "Workflow failed",
            extra={
                "workflow_id": state.workflow_id,
                "agent_type": step.agent_type.value,
                "error": reason,
            },
        )
        await self._set_issue_status(updated, IssueStatus.FAILED, reason)
        await self._emit(
            EventType.ERROR,
            updated,
            {"agent_type": step.agent_type.value, "error_message": reason},
        )
        raise WorkflowFailed(state.workflow_id, reason)

    async def _escalate_exhausted(
        self, state: WorkflowState, agent_type: AgentType, failure: AgentExecutionError
    ) -> None:
        detail = (
            f"{agent_type.value} failed {state.config.retry.max_attempts} consecutive "
            f"attempts; last error: {failure.message}"
        )
        await self._set_issue_status(state, IssueStatus.PENDING_INTERVENTION, detail)
        await self._notify(
            state, EscalationReason.RETRIES_EXHAUSTED, detail, agent_type, parked=True
        )

    async def _finish(self, state: WorkflowState) -> None:
        issue = await self._require_issue(state.city_id, state.issue_id)
        if issue.missing_details:
            status = IssueStatus.NEEDS_MORE_DETAIL
        elif any(step.outcome == StepOutcome.FLAGGED for step in state.steps):
            status = IssueStatus.PENDING_REVIEW
        else:
            status = IssueStatus.PROCESSED
        await self._set_issue_status(state, status, "Agent workflow completed.")
        await self._emit(
            EventType.COMPLETION,
            state,
            {
                "issue_status": status.value,
                "duration_seconds": (state.updated_at - state.created_at).total_seconds(),
            },
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def retry_failed_agent(
        self, workflow_id: str, agent_type: AgentType, actor: str = "system"
    ) -> WorkflowState:
        """Give the failed step at the cursor a fresh attempt budget and continue.

        Raises:
            NotFoundError: If the workflow does not exist.
            InvalidStateError: If the workflow is not waiting on a failed
                ``agent_type`` step.
        """
        async with self._workflow_lock(workflow_id):
            state = await self.state_machine.get(workflow_id)
            step = state.current_step
            if state.status not in RETRYABLE_STATUSES:
                raise InvalidStateError(
                    f"Workflow {workflow_id} is {state.status.value}; only escalated or "
                    f"waiting_retry workflows can be retried"
                )
            if step is None or step.agent_type != agent_type:
                raise InvalidStateError(
                    f"{agent_type.value} is not the current step of workflow {workflow_id}"
                )
            if step.outcome not in (StepOutcome.FAILED, StepOutcome.ESCALATED):
                raise InvalidStateError(
                    f"Step {agent_type.value} of workflow {workflow_id} is {step.outcome.value}"
                )

            record = ProcessingStepRecord(
                workflow_id=workflow_id,
                issue_id=state.issue_id,
                city_id=state.city_id,
                kind=RecordKind.RETRY_REQUESTED,
                agent_type=agent_type,
                step_index=state.cursor,
                reasoning=f"Manual retry of {agent_type.value} requested by {actor}.",
                resulting_status=WorkflowStatus.RUNNING,
                actor=actor,
            )
            await self.state_machine.commit(state, record)
            logger.info(
                "Manual retry requested",
                extra={"workflow_id": workflow_id, "agent_type": agent_type.value, "actor": actor},
            )

        return await self._run(workflow_id)

    async def get_workflow_status(self, workflow_id: str) -> WorkflowState:
        """Raises NotFoundError for unknown workflows."""
        return await self.state_machine.get(workflow_id)

    async def get_issue(self, issue_id: str) -> Issue:
        state = await self.state_machine.store.get_by_issue(issue_id)
        if state is None:
            raise NotFoundError("issue", issue_id)
        return await self._require_issue(state.city_id, issue_id)

    def customize_workflow(
        self, city_id: str, config: Union[WorkflowConfig, Mapping[str, Any]]
    ) -> WorkflowConfig:
        """Install a city's config for workflows started from now on.

        Raises:
            InvalidConfigError: If the config violates its invariants.
        """
        return self.configs.install(city_id, config)

    async def resume_incomplete(self) -> List[WorkflowState]:
        """Continue every running or waiting_retry workflow from its cursor.

        Used at startup. Each workflow is recovered first; with a dispatcher
        attached its issue is then queued and the recovered state returned,
        otherwise it runs inline. A workflow that fails is logged and skipped
        so the others still resume.
        """
        resumed = []
        for status in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING_RETRY):
            for state in await self.state_machine.list_by_status(status):
                logger.info(
                    "Resuming workflow",
                    extra={
                        "workflow_id": state.workflow_id,
                        "status": state.status.value,
                        "cursor": state.cursor,
                    },
                )
                try:
                    recovered = await self.recover_workflow(state.workflow_id)
                    if self.dispatcher is not None:
                        await self.dispatcher.enqueue(recovered.issue_id)
                        resumed.append(recovered)
                    else:
                        resumed.append(await self._run(state.workflow_id))
                except WorkflowFailed as e:
                    logger.error(
                        "Resumed workflow failed",
                        extra={"workflow_id": state.workflow_id, "error": e.reason},
                    )
                    resumed.append(await self.state_machine.get(state.workflow_id))
                except NotFoundError as e:
                    # The issue store no longer holds the issue; leave the workflow parked
                    logger.error(
                        "Cannot resume workflow",
                        extra={"workflow_id": state.workflow_id, "error": e.message},
                    )
        return resumed

    async def recover_workflow(self, workflow_id: str) -> WorkflowState:
        """Re-derive a workflow's state from its audit trail if the stored copy lags.

        Committed step results the issue record is missing (a crash between
        the commit and the issue write) are copied onto it. Fields already
        set, including administrator overrides, are left alone.

        Raises:
            NotFoundError: If the workflow or its issue does not exist.
        """
        async with self._workflow_lock(workflow_id):
            state, _ = await self.state_machine.recover(workflow_id)
            await self._sync_issue_results(state)
            return state

    async def _sync_issue_results(self, state: WorkflowState) -> None:
        issue = await self._require_issue(state.city_id, state.issue_id)
        missing = {
            AgentType.CLASSIFIER: issue.classification is None,
            AgentType.PRIORITY_SCORER: issue.priority is None,
            AgentType.DUPLICATE_DETECTOR: not issue.similar_issues,
        }
        for key, result in state.context.items():
            agent_type = AgentType(key)
            if missing.get(agent_type):
                await self._write_step_result(state, agent_type, result)

    async def override_decision(self, request: OverrideRequest) -> Issue:
        """Replace a decision on an issue on behalf of an administrator.

        The override is an audit record referencing the record that held the
        decision before; earlier records stay untouched.

        Raises:
            NotFoundError: If the issue (or a named primary issue) is unknown.
            InvalidStateError: If there is no decision to override yet.
            InvalidOverrideError: If the new value is not acceptable.
        """
        state = await self.state_machine.store.get_by_issue(request.issue_id)
        if state is None:
            raise NotFoundError("issue", request.issue_id)

        async with self._workflow_lock(state.workflow_id):
            issue = await self._require_issue(state.city_id, request.issue_id)
            original = await self.execution_log.latest_decision(issue.issue_id, request.field)
            if original is None:
                raise InvalidStateError(
                    f"Issue {issue.issue_id} has no {request.field} decision to override"
                )

            previous = self._field_payload(issue, request.field)
            updated = await self._apply_override(state, issue, request)

            record = ProcessingStepRecord(
                workflow_id=state.workflow_id,
                issue_id=issue.issue_id,
                city_id=issue.city_id,
                kind=RecordKind.OVERRIDE,
                input_payload=request.model_dump(mode="json"),
                output_payload={
                    "field": request.field,
                    "previous": previous,
                    "new": self._field_payload(updated, request.field),
                },
                reasoning=request.justification,
                actor=request.actor,
                references_record_id=original.record_id,
            )
            await self.execution_log.append(record)

        logger.info(
            "Decision overridden",
            extra={
                "issue_id": issue.issue_id,
                "field": request.field,
                "actor": request.actor,
                "references_record_id": original.record_id,
            },
        )
        return updated

    async def update_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        actor: str = "system",
        reason: str = "Status updated.",
    ) -> Issue:
        """Orchestrator-approved status change, recorded in the audit trail.

        Raises:
            NotFoundError: If the issue is unknown.
        """
        state = await self.state_machine.store.get_by_issue(issue_id)
        if state is None:
            raise NotFoundError("issue", issue_id)
        async with self._workflow_lock(state.workflow_id):
            return await self._set_issue_status(
                state, status, reason, actor=actor, force=True
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_issue(self, city_id: str, issue_id: str) -> Issue:
        issue = await self.issue_store.retrieve(city_id, issue_id)
        if issue is None:
            raise NotFoundError("issue", issue_id)
        return issue

    async def _write_step_result(
        self, state: WorkflowState, agent_type: AgentType, result: Dict[str, Any]
    ) -> None:
        """Copy an accepted step result onto the issue record."""
        changes: Dict[str, Any] = {}
        if agent_type == AgentType.CLASSIFIER:
            changes["classification"] = Classification.model_validate(result)
        elif agent_type == AgentType.PRIORITY_SCORER:
            changes["priority"] = PriorityScore.model_validate(result)
        elif agent_type == AgentType.DUPLICATE_DETECTOR:
            changes["similar_issues"] = [
                SimilarityResult.model_validate(r) for r in result.get("similar_issues", [])
            ]

        reasons = [
            f"{step.agent_type.value} result below confidence threshold "
            f"{state.config.threshold_for(step.agent_type):.2f}"
            for step in state.steps
            if step.outcome == StepOutcome.FLAGGED
        ]
        changes["needs_review"] = bool(reasons)
        changes["review_reasons"] = reasons
        await self.issue_store.apply_changes(state.city_id, state.issue_id, changes)

    async def _set_issue_status(
        self,
        state: WorkflowState,
        status: IssueStatus,
        reason: str,
        actor: str = "system",
        force: bool = False,
    ) -> Issue:
        issue = await self._require_issue(state.city_id, state.issue_id)
        if issue.status == status:
            return issue
        if issue.status in ADMINISTRATIVE_STATUSES and not force:
            return issue

        record = ProcessingStepRecord(
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            kind=RecordKind.STATUS_CHANGE,
            input_payload={"from": issue.status.value},
            output_payload={"to": status.value},
            reasoning=reason,
            actor=actor,
        )
        await self.execution_log.append(record)
        updated = await self.issue_store.update_status(state.city_id, state.issue_id, status)
        if status == IssueStatus.RESOLVED and updated.resolved_at is None:
            updated = await self.issue_store.apply_changes(
                state.city_id, state.issue_id, {"resolved_at": _now()}
            )
        return updated

    @staticmethod
    def _field_payload(issue: Issue, field: str) -> Any:
        value = getattr(issue, field)
        if hasattr(value, "model_dump"):
            return value.model_dump(mode="json")
        if isinstance(value, IssueStatus):
            return value.value
        return value

    async def _apply_override(
        self, state: WorkflowState, issue: Issue, request: OverrideRequest
    ) -> Issue:
        reasoning = f"Overridden by {request.actor}: {request.justification}"
        value = request.new_value

        if request.field == "classification":
            domain = value.get("domain") if isinstance(value, dict) else value
            if domain not in state.config.domains:
                raise InvalidOverrideError(f"'{domain}' is not a configured domain")
            classification = Classification(domain=domain, confidence=1.0, reasoning=reasoning)
            return await self.issue_store.apply_changes(
                issue.city_id, issue.issue_id, {"classification": classification}
            )

        if request.field == "priority":
            try:
                priority = PriorityScore(
                    severity=value["severity"],
                    urgency=value["urgency"],
                    reasoning=reasoning,
                    confidence=1.0,
                )
            except (KeyError, TypeError, ValidationError) as e:
                raise InvalidOverrideError(f"Invalid priority override: {e}") from e
            return await self.issue_store.apply_changes(
                issue.city_id, issue.issue_id, {"priority": priority}
            )

        if request.field == "status":
            try:
                status = IssueStatus(value)
            except ValueError as e:
                raise InvalidOverrideError(f"Unknown status '{value}'") from e
            return await self._set_issue_status(
                state, status, reasoning, actor=request.actor, force=True
            )

        return await self._relink_duplicate(issue, value)

    async def _relink_duplicate(self, issue: Issue, primary_id: Optional[str]) -> Issue:
        if primary_id == issue.issue_id:
            raise InvalidOverrideError("An issue cannot be a duplicate of itself")
        if primary_id is not None:
            await self._require_issue(issue.city_id, primary_id)

        if issue.duplicate_of is not None and issue.duplicate_of != primary_id:
            old_primary = await self.issue_store.retrieve(issue.city_id, issue.duplicate_of)
            if old_primary is not None:
                await self.issue_store.apply_changes(
                    issue.city_id,
                    old_primary.issue_id,
                    {"affected_count": max(1, old_primary.affected_count - 1)},
                )
            await self.issue_store.apply_changes(
                issue.city_id, issue.issue_id, {"duplicate_of": None}
            )

        if primary_id is not None:
            await self.issue_store.link_duplicates(issue.city_id, primary_id, [issue.issue_id])
        return await self._require_issue(issue.city_id, issue.issue_id)

    async def _notify(
        self,
        state: WorkflowState,
        reason: EscalationReason,
        detail: str,
        agent_type: Optional[AgentType] = None,
        parked: bool = False,
    ) -> None:
        await self._emit(
            EventType.ESCALATION,
            state,
            {
                "reason_code": reason.value,
                "reason": detail,
                "agent_type": agent_type.value if agent_type else None,
                "workflow_parked": parked,
            },
        )
        if self.escalation_sink is None:
            return
        ticket = EscalationTicket(
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            reason=reason,
            detail=detail,
            agent_type=agent_type,
        )
        try:
            await self.escalation_sink.notify(ticket)
        except Exception:
            logger.exception(
                "Failed to notify escalation sink",
                extra={"workflow_id": state.workflow_id, "reason": reason.value},
            )

    async def _emit(
        self, event_type: EventType, state: WorkflowState, details: Dict[str, Any]
    ) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the workflow."""
        event = WorkflowEvent(
            event_type=event_type,
            workflow_id=state.workflow_id,
            issue_id=state.issue_id,
            city_id=state.city_id,
            details=details,
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={"event_type": event_type.value, "workflow_id": state.workflow_id},
            )
