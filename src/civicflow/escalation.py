"""Human queue for decisions that need an administrator.

The orchestrator sends a ticket when agent retries are exhausted, when a
priority score requires escalation, or when a result falls below a city's
low-confidence floor. Notification never stops a workflow by itself.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from src.civicflow.agents.base import AgentType


logger = logging.getLogger(__name__)


class EscalationReason(str, Enum):
    RETRIES_EXHAUSTED = "retries_exhausted"
    HIGH_PRIORITY = "high_priority"
    LOW_CONFIDENCE = "low_confidence"


class EscalationTicket(BaseModel):
    """One notice in the human queue."""

    ticket_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    issue_id: str
    city_id: str
    reason: EscalationReason
    detail: str = Field(..., min_length=1)
    agent_type: Optional[AgentType] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    acknowledged: bool = False


@runtime_checkable
class EscalationSink(Protocol):
    """Receives escalation tickets."""

    async def notify(self, ticket: EscalationTicket) -> None:
        ...


class InMemoryEscalationQueue:
    """EscalationSink keeping tickets in memory until acknowledged."""

    def __init__(self) -> None:
        self._tickets: List[EscalationTicket] = []
        self._lock = asyncio.Lock()

    async def notify(self, ticket: EscalationTicket) -> None:
        async with self._lock:
            self._tickets.append(ticket)
        logger.warning(
            "Escalation queued",
            extra={
                "ticket_id": ticket.ticket_id,
                "workflow_id": ticket.workflow_id,
                "issue_id": ticket.issue_id,
                "city_id": ticket.city_id,
                "reason": ticket.reason.value,
            },
        )

    async def pending(self, city_id: Optional[str] = None) -> List[EscalationTicket]:
        return [
            t for t in self._tickets
            if not t.acknowledged and (city_id is None or t.city_id == city_id)
        ]

    async def acknowledge(self, ticket_id: str) -> bool:
        async with self._lock:
            for i, ticket in enumerate(self._tickets):
                if ticket.ticket_id == ticket_id and not ticket.acknowledged:
                    self._tickets[i] = ticket.model_copy(update={"acknowledged": True})
                    return True
        return False
