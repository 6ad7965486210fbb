"""Factories and fake agents shared by the orchestrator tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Union

from pydantic import BaseModel

from src.civicflow.agents.base import Agent, AgentRequest, AgentType
from src.civicflow.models import GeoLocation, IssueSubmission
from src.civicflow.state.memory import InMemoryWorkflowStore
from src.civicflow.state.models import WorkflowState


BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

# Script entry for ScriptedAgent: sleep past any test timeout
HANG = "hang"


def run_async(coro):
    return asyncio.run(coro)


class ScriptedAgent(Agent):
    """Agent replaying a script of results, exceptions and hangs.

    Each invocation consumes the next entry; the last entry repeats.
    """

    def __init__(
        self,
        agent_type: AgentType,
        script: Sequence[Union[BaseModel, Exception, str]],
    ):
        self.agent_type = agent_type
        self.script = list(script)
        self.calls: List[AgentRequest] = []

    async def _run(self, request: AgentRequest) -> BaseModel:
        self.calls.append(request)
        entry = self.script[0] if len(self.script) == 1 else self.script.pop(0)
        if isinstance(entry, str) and entry == HANG:
            await asyncio.sleep(10)
        if isinstance(entry, Exception):
            raise entry
        return entry


def make_submission(
    text: str = "Deep pothole on Station Road damaging vehicles",
    city_id: str = "pune",
    latitude: Optional[float] = 18.5204,
    longitude: float = 73.8567,
    area: Optional[str] = "Shivajinagar",
    submitted_at: datetime = BASE_TIME,
) -> IssueSubmission:
    location = None
    if latitude is not None:
        location = GeoLocation(latitude=latitude, longitude=longitude, area=area)
    return IssueSubmission(
        city_id=city_id,
        text=text,
        location=location,
        submitted_at=submitted_at,
    )


def days(n: float) -> timedelta:
    return timedelta(days=n)


class CrashingWorkflowStore(InMemoryWorkflowStore):
    """In-memory store whose stored state can be rolled back behind its trail."""

    def overwrite_state(self, state: WorkflowState) -> None:
        """Replace a stored state without touching the trail.

        Simulates a crash between a record append and its state write.
        """
        self._states[state.workflow_id] = state.model_copy(deep=True)
