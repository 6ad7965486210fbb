"""Confidence and retry policies applied uniformly to every agent step.

evaluate_confidence maps an agent's self-reported confidence to one of
three outcomes. Low confidence never halts a workflow: a flagged step still
advances, and the issue gains a manual-review marker. An escalated outcome
additionally notifies the human queue.

RetryPolicy describes how execution failures (not confidence) are retried:
exponential backoff with full jitter, bounded by an attempt count.
"""

import random
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ConfidenceOutcome(str, Enum):
    """Result of applying the confidence policy to one agent result."""

    ACCEPT = "accept"
    FLAG_FOR_REVIEW = "flag_for_review"
    ESCALATE = "escalate"


def evaluate_confidence(
    score: float,
    threshold: float,
    escalation_floor: Optional[float] = None,
) -> ConfidenceOutcome:
    """Map a confidence score to a policy outcome.

    Args:
        score: Agent confidence in [0, 1].
        threshold: Minimum confidence accepted without review.
        escalation_floor: Scores strictly below this escalate to a human
            queue instead of only being flagged. None disables escalation.

    Raises:
        ValueError: If any argument lies outside [0, 1].
    """
    for name, value in (("score", score), ("threshold", threshold)):
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{name} must be in [0, 1], got {value}")
    if escalation_floor is not None and not 0.0 <= escalation_floor <= 1.0:
        raise ValueError(f"escalation_floor must be in [0, 1], got {escalation_floor}")

    if score >= threshold:
        return ConfidenceOutcome.ACCEPT
    if escalation_floor is not None and score < escalation_floor:
        return ConfidenceOutcome.ESCALATE
    return ConfidenceOutcome.FLAG_FOR_REVIEW


class RetryPolicy(BaseModel):
    """Backoff schedule for agent execution failures.

    Attributes:
        max_attempts: Total attempts per step before escalating (>= 1).
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap on any single delay, in seconds.
        jitter: Use full jitter (uniform in [0, capped delay]).
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: bool = True

    @model_validator(mode="after")
    def check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the given failed attempt (1-indexed)."""
        exponential_delay = self.base_delay * (2 ** max(0, attempt - 1))
        capped_delay = min(exponential_delay, self.max_delay)
        if self.jitter:
            return random.uniform(0, capped_delay)
        return capped_delay

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts
