"""Uniform capability contract implemented by every analysis agent.

The orchestrator never talks to a provider directly. Each agent role
(classifier, priority scorer, duplicate detector, insight generator) is
wrapped behind the Agent interface so provider choice is configuration:
an LLM-backed classifier and a keyword classifier are interchangeable.

Requests carry the issue plus the accumulated outputs of earlier steps;
responses carry the result, confidence, reasoning and latency.
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from src.civicflow.agents.models import DEFAULT_DOMAINS
from src.civicflow.models import Issue


logger = logging.getLogger(__name__)


class AgentType(str, Enum):
    """Agent roles the orchestrator can sequence."""

    CLASSIFIER = "classifier"
    PRIORITY_SCORER = "priority_scorer"
    DUPLICATE_DETECTOR = "duplicate_detector"
    INSIGHT_GENERATOR = "insight_generator"


class AgentRequest(BaseModel):
    """Input to a single agent invocation.

    Attributes:
        issue: The issue being processed.
        context: Outputs of earlier steps keyed by agent type value.
        domains: Domain list of the issue's city.
        similarity_threshold: Duplicate threshold of the issue's city.
    """

    issue: Issue
    context: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    domains: List[str] = Field(default_factory=lambda: list(DEFAULT_DOMAINS))
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    def prior(self, agent_type: "AgentType") -> Optional[Dict[str, Any]]:
        return self.context.get(agent_type.value)


class AgentResponse(BaseModel):
    """Output of a single agent invocation."""

    agent_type: AgentType
    result: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1)
    latency_seconds: float = Field(default=0.0, ge=0.0)


class Agent(ABC):
    """Base class for analysis agents.

    Subclasses set ``agent_type`` and implement ``_run``, returning a result
    model that exposes ``confidence`` and ``reasoning``. Provider failures
    should raise AgentExecutionError; the orchestrator retries them.
    """

    agent_type: AgentType

    async def invoke(self, request: AgentRequest) -> AgentResponse:
        started = time.monotonic()
        result = await self._run(request)
        latency = time.monotonic() - started

        logger.debug(
            "Agent invocation finished",
            extra={
                "agent_type": self.agent_type.value,
                "issue_id": request.issue.issue_id,
                "latency_seconds": latency,
            },
        )

        return AgentResponse(
            agent_type=self.agent_type,
            result=result.model_dump(mode="json"),
            confidence=result.confidence,
            reasoning=result.reasoning,
            latency_seconds=latency,
        )

    @abstractmethod
    async def _run(self, request: AgentRequest) -> BaseModel:
        pass


class AgentRegistry:
    """Maps agent roles to the provider configured for them."""

    def __init__(self, agents: Optional[Iterable[Agent]] = None):
        self._agents: Dict[AgentType, Agent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if agent.agent_type in self._agents:
            logger.info(
                "Replacing registered agent",
                extra={"agent_type": agent.agent_type.value},
            )
        self._agents[agent.agent_type] = agent

    def get(self, agent_type: AgentType) -> Agent:
        try:
            return self._agents[agent_type]
        except KeyError:
            raise KeyError(f"No agent registered for {agent_type.value}") from None

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._agents

    @property
    def agent_types(self) -> List[AgentType]:
        return list(self._agents)
