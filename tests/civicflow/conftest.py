"""Shared fixtures for orchestrator tests."""

import pytest

from src.civicflow.agents.base import Agent, AgentRegistry
from src.civicflow.agents.classifier import KeywordClassifier
from src.civicflow.agents.duplicates import DuplicateDetector
from src.civicflow.agents.priority import RuleBasedPriorityScorer
from src.civicflow.escalation import InMemoryEscalationQueue
from src.civicflow.events.emitter import RecordingEventEmitter
from src.civicflow.orchestrator import WorkflowOrchestrator
from src.civicflow.state.machine import WorkflowStateMachine
from src.civicflow.storage import InMemoryIssueStore
from src.civicflow.workflow_config import WorkflowConfigRegistry

from tests.civicflow.factories import CrashingWorkflowStore


@pytest.fixture
def issue_store():
    return InMemoryIssueStore()


@pytest.fixture
def workflow_store():
    return CrashingWorkflowStore()


@pytest.fixture
def recorder():
    return RecordingEventEmitter()


@pytest.fixture
def escalation_queue():
    return InMemoryEscalationQueue()


@pytest.fixture
def make_orchestrator(issue_store, workflow_store, recorder, escalation_queue):
    """Factory building an orchestrator over in-memory stores.

    Agent types not passed in get the rule-based providers. Backoff sleeps
    are skipped.
    """

    def factory(*agents: Agent, agent_timeout: float = 5.0, configs=None):
        configs = configs or WorkflowConfigRegistry()
        registry = AgentRegistry(
            [
                KeywordClassifier(),
                RuleBasedPriorityScorer(),
                DuplicateDetector(issue_store, configs=configs),
            ]
        )
        for agent in agents:
            registry.register(agent)

        async def no_sleep(delay: float) -> None:
            return None

        return WorkflowOrchestrator(
            state_machine=WorkflowStateMachine(workflow_store),
            issue_store=issue_store,
            agents=registry,
            configs=configs,
            event_emitter=recorder,
            escalation_sink=escalation_queue,
            agent_timeout=agent_timeout,
            sleep=no_sleep,
        )

    return factory
