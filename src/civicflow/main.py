"""FastAPI application entry point for the civic workflow orchestrator.

This module wires the orchestrator's collaborators from settings and
exposes the operator-facing HTTP surface: issue intake, workflow status,
manual retries, per-city workflow configs, overrides, audit trails,
explanations, escalations and insight reports.

Metrics are exposed in Prometheus format at ``/metrics``; configuration is
logged (with secrets redacted) on startup.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from src.civicflow.agents.base import Agent, AgentRegistry, AgentType
from src.civicflow.agents.classifier import KeywordClassifier, LLMClassifier
from src.civicflow.agents.duplicates import DuplicateDetector
from src.civicflow.agents.insights import (
    AreaComparison,
    EmergingIssue,
    InsightGenerator,
    ResolutionMetrics,
    WeeklyReport,
)
from src.civicflow.agents.llm import LLMProvider
from src.civicflow.agents.priority import LLMPriorityScorer, RuleBasedPriorityScorer
from src.civicflow.audit.models import OverrideRequest, ProcessingStepRecord
from src.civicflow.config import CivicFlowSettings, get_settings
from src.civicflow.dispatch import IssueDispatcher
from src.civicflow.errors import (
    CivicFlowError,
    ErrorCategory,
    InvalidConfigError,
    InvalidOverrideError,
    InvalidStateError,
    NotFoundError,
    VersionConflictError,
    WorkflowFailed,
)
from src.civicflow.escalation import EscalationTicket, InMemoryEscalationQueue
from src.civicflow.events.emitter import EventSinkType, create_event_emitter
from src.civicflow.events.metrics import generate_metrics_output
from src.civicflow.explain import ExplainabilityEngine, Explanation, IdentityTranslator, LLMTranslator
from src.civicflow.models import Issue, IssueStatus, IssueSubmission, SubmissionReceipt
from src.civicflow.orchestrator import WorkflowOrchestrator
from src.civicflow.state.machine import WorkflowStateMachine
from src.civicflow.state.memory import InMemoryWorkflowStore
from src.civicflow.state.models import WorkflowState
from src.civicflow.state.repository import PostgresWorkflowStore
from src.civicflow.storage import InMemoryIssueStore
from src.civicflow.workflow_config import WorkflowConfig, WorkflowConfigRegistry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: CivicFlowSettings
orchestrator: Optional[WorkflowOrchestrator] = None
dispatcher: Optional[IssueDispatcher] = None
escalations: Optional[InMemoryEscalationQueue] = None
explainer: Optional[ExplainabilityEngine] = None
insights: Optional[InsightGenerator] = None
postgres_store: Optional[PostgresWorkflowStore] = None


_CATEGORY_STATUS = {
    ErrorCategory.CALLER_ERROR: 400,
    ErrorCategory.CITIZEN_INPUT: 422,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.ADMIN_INTERVENTION: 500,
}


def _status_code_for(error: CivicFlowError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (InvalidStateError, VersionConflictError)):
        return 409
    if isinstance(error, (InvalidConfigError, InvalidOverrideError)):
        return 422
    return _CATEGORY_STATUS.get(error.category, 500)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: CivicFlowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("CivicFlow configuration:")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url, visible_chars=13)}")
    logger.info(f"  LLM agents: {cfg.use_llm_agents}")
    logger.info(f"  LLM URL: {cfg.llm_url}")
    logger.info(f"  LLM Model: {cfg.llm_model}")
    logger.info(f"  LLM API Key: {_redact_secret(cfg.llm_api_key)}")
    logger.info(f"  Agent Timeout Seconds: {cfg.agent_timeout_seconds}")
    logger.info(
        f"  Retry: {cfg.max_attempts} attempts, "
        f"backoff {cfg.backoff_base_delay}s..{cfg.backoff_max_delay}s"
    )
    logger.info(f"  Max Concurrent Steps: {cfg.max_concurrent_steps}")
    logger.info(f"  Dispatch Workers: {cfg.dispatch_workers}")
    logger.info(f"  Similarity Threshold: {cfg.similarity_threshold}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_agents(
    issue_store: InMemoryIssueStore,
    configs: WorkflowConfigRegistry,
    provider: Optional[LLMProvider],
) -> AgentRegistry:
    """Register one provider per agent type."""
    classifier: Agent
    scorer: Agent
    if provider is not None:
        classifier = LLMClassifier(provider)
        scorer = LLMPriorityScorer(provider)
    else:
        classifier = KeywordClassifier()
        scorer = RuleBasedPriorityScorer()
    return AgentRegistry(
        [
            classifier,
            scorer,
            DuplicateDetector(issue_store, configs=configs),
            InsightGenerator(issue_store),
        ]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Dependency wiring for the orchestrator
    - Resumption of workflows interrupted by the previous shutdown
    - Draining the dispatch queue on shutdown
    """
    global settings, orchestrator, dispatcher, escalations, explainer, insights, postgres_store

    logger.info("CivicFlow starting up...")

    settings = get_settings()
    _log_configuration(settings)

    if settings.database_url:
        postgres_store = PostgresWorkflowStore(settings.database_url)
        await postgres_store.connect()
        workflow_store: Any = postgres_store
    else:
        logger.warning("No database configured; workflow state is kept in memory")
        workflow_store = InMemoryWorkflowStore()

    issue_store = InMemoryIssueStore()
    provider = None
    if settings.use_llm_agents:
        provider = LLMProvider(
            llm_url=settings.llm_url,
            model_name=settings.llm_model,
            timeout=settings.agent_timeout_seconds,
            api_key=settings.llm_api_key,
        )
    configs = WorkflowConfigRegistry(settings.default_workflow_config())
    agents = _build_agents(issue_store, configs, provider)
    insights = agents.get(AgentType.INSIGHT_GENERATOR)

    escalations = InMemoryEscalationQueue()
    orchestrator = WorkflowOrchestrator(
        state_machine=WorkflowStateMachine(workflow_store),
        issue_store=issue_store,
        agents=agents,
        configs=configs,
        event_emitter=create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS]),
        escalation_sink=escalations,
        agent_timeout=settings.agent_timeout_seconds,
        max_concurrent_steps=settings.max_concurrent_steps,
    )
    explainer = ExplainabilityEngine(
        orchestrator.execution_log,
        translator=LLMTranslator(provider) if provider is not None else IdentityTranslator(),
    )

    dispatcher = IssueDispatcher(
        orchestrator.process_issue,
        workers=settings.dispatch_workers,
        max_size=settings.dispatch_queue_size,
    )
    dispatcher.start()
    orchestrator.dispatcher = dispatcher

    # Recovered workflows are queued, not run before serving
    requeued = await orchestrator.resume_incomplete()
    logger.info("CivicFlow started successfully", extra={"requeued_workflows": len(requeued)})

    yield

    logger.info("CivicFlow shutting down...")

    await dispatcher.stop()
    orchestrator.dispatcher = None
    await orchestrator.event_emitter.close()
    if postgres_store is not None:
        await postgres_store.disconnect()
        postgres_store = None

    logger.info("CivicFlow shutdown complete")


app = FastAPI(
    title="CivicFlow",
    description="Agent workflow orchestration for citizen-reported civic issues",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(CivicFlowError)
async def civicflow_error_handler(request: Request, exc: CivicFlowError) -> JSONResponse:
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logger.error("Request failed", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def _orchestrator() -> WorkflowOrchestrator:
    if orchestrator is None:
        raise RuntimeError("Orchestrator not initialized")
    return orchestrator


# -----------------------------------------------------------------------------
# Request bodies
# -----------------------------------------------------------------------------


class OverrideBody(BaseModel):
    actor: str = Field(..., min_length=1)
    field: str = Field(..., pattern=r"^(classification|priority|duplicate_of|status)$")
    new_value: Any = None
    justification: str = Field(..., min_length=1)


class StatusUpdateBody(BaseModel):
    status: IssueStatus
    actor: str = Field(default="system", min_length=1)
    reason: str = Field(default="Status updated.", min_length=1)


class SimilarityThresholdBody(BaseModel):
    threshold: float = Field(..., ge=0.0, le=1.0)


# -----------------------------------------------------------------------------
# Probes and metrics
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Reports the database as healthy when no database is configured, since
    workflow state then lives in memory.
    """
    database_status = "healthy"
    if postgres_store is not None and not await postgres_store.health_check():
        database_status = "unhealthy"

    body = {
        "status": "ready" if database_status == "healthy" and orchestrator else "not_ready",
        "dependencies": {
            "database": database_status,
            "dispatcher": "running" if dispatcher and dispatcher.running else "stopped",
        },
    }
    return JSONResponse(status_code=200 if body["status"] == "ready" else 503, content=body)


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output().decode("utf-8"))


# -----------------------------------------------------------------------------
# Issues and workflows
# -----------------------------------------------------------------------------


@app.post("/issues", status_code=202, response_model=SubmissionReceipt)
async def submit_issue(submission: IssueSubmission):
    """Accept a citizen submission; processing continues in the background."""
    return await _orchestrator().submit_issue(submission)


@app.get("/issues/{issue_id}", response_model=Issue)
async def get_issue(issue_id: str):
    return await _orchestrator().get_issue(issue_id)


@app.put("/issues/{issue_id}/status", response_model=Issue)
async def update_issue_status(issue_id: str, body: StatusUpdateBody):
    return await _orchestrator().update_issue_status(
        issue_id, body.status, actor=body.actor, reason=body.reason
    )


@app.post("/issues/{issue_id}/overrides", response_model=Issue)
async def override_decision(issue_id: str, body: OverrideBody):
    request = OverrideRequest(issue_id=issue_id, **body.model_dump())
    return await _orchestrator().override_decision(request)


@app.get("/issues/{issue_id}/audit-trail", response_model=List[ProcessingStepRecord])
async def get_audit_trail(issue_id: str):
    return await explainer.get_decision_audit_trail(issue_id)


@app.get("/issues/{issue_id}/explanation", response_model=List[Explanation])
async def explain_issue(issue_id: str, language: str = Query(default="en", min_length=2)):
    issue = await _orchestrator().get_issue(issue_id)
    return await explainer.explain_issue(issue, language)


@app.get("/workflows/{workflow_id}", response_model=WorkflowState)
async def get_workflow(workflow_id: str):
    return await _orchestrator().get_workflow_status(workflow_id)


@app.post("/workflows/{workflow_id}/retry/{agent_type}", response_model=WorkflowState)
async def retry_agent(workflow_id: str, agent_type: AgentType, actor: str = "system"):
    """Retry the failed step; a retry that fails the workflow still returns its state."""
    try:
        return await _orchestrator().retry_failed_agent(workflow_id, agent_type, actor=actor)
    except WorkflowFailed:
        return await _orchestrator().get_workflow_status(workflow_id)


# -----------------------------------------------------------------------------
# Cities
# -----------------------------------------------------------------------------


@app.put("/cities/{city_id}/workflow-config", response_model=WorkflowConfig)
async def customize_workflow(city_id: str, config: Dict[str, Any]):
    return _orchestrator().customize_workflow(city_id, config)


@app.put("/cities/{city_id}/similarity-threshold", response_model=WorkflowConfig)
async def update_similarity_threshold(city_id: str, body: SimilarityThresholdBody):
    detector = _orchestrator().agents.get(AgentType.DUPLICATE_DETECTOR)
    detector.update_similarity_thresholds(city_id, body.threshold)
    return _orchestrator().configs.get(city_id)


@app.get("/cities/{city_id}/escalations", response_model=List[EscalationTicket])
async def pending_escalations(city_id: str):
    return await escalations.pending(city_id)


@app.post("/escalations/{ticket_id}/acknowledge")
async def acknowledge_escalation(ticket_id: str):
    if not await escalations.acknowledge(ticket_id):
        raise NotFoundError("escalation", ticket_id)
    return {"ticket_id": ticket_id, "acknowledged": True}


@app.get("/cities/{city_id}/insights/emerging", response_model=List[EmergingIssue])
async def emerging_issues(city_id: str):
    return await insights.identify_emerging_issues(city_id)


@app.get("/cities/{city_id}/insights/weekly-report", response_model=WeeklyReport)
async def weekly_report(city_id: str, week_start: datetime):
    if week_start.tzinfo is None:
        week_start = week_start.replace(tzinfo=timezone.utc)
    return await insights.generate_weekly_report(city_id, week_start)


@app.get("/cities/{city_id}/insights/resolution", response_model=ResolutionMetrics)
async def resolution_metrics(city_id: str):
    return await insights.analyze_resolution_metrics(city_id)


@app.get("/cities/{city_id}/insights/areas", response_model=List[AreaComparison])
async def compare_areas(city_id: str, area: Optional[List[str]] = Query(default=None)):
    return await insights.compare_areas(city_id, area)


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.civicflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
