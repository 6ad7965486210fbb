"""Priority scoring of classified issues.

Two interchangeable providers implement the priority scorer role:
- RuleBasedPriorityScorer: domain baselines adjusted by hazard, duration
  and urgency cues in the complaint text
- LLMPriorityScorer: OpenAI-compatible LLM through LangChain

Severity and urgency are integers in [1, 5]. The escalation flag is
derived by PriorityScore itself, never taken from the provider.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional

from src.civicflow.agents.base import Agent, AgentRequest, AgentType
from src.civicflow.agents.llm import LLMProvider, clamp_unit
from src.civicflow.agents.models import Classification, PriorityScore


logger = logging.getLogger(__name__)


DOMAIN_BASE_SEVERITY: Dict[str, int] = {
    "Roads & Potholes": 3,
    "Electricity/Street Lighting": 2,
    "Water Supply": 3,
    "Sewage & Drainage": 3,
    "Waste Management": 2,
    "Public Transport": 2,
    "Traffic & Parking": 2,
    "Parks & Public Spaces": 1,
    "Public Health & Sanitation": 3,
    "Noise Pollution": 1,
    "Air Pollution": 2,
    "Building & Construction": 2,
    "Stray Animals": 2,
    "Public Safety": 4,
    "Encroachment": 1,
    "Tax & Billing": 1,
}

DEFAULT_SEVERITY = 2
BASE_URGENCY = 2

HAZARD_PATTERN = re.compile(
    r"\b(accident|injur|electrocut|live wire|sparking|fire|collaps|flood|"
    r"gas leak|bleeding|death|died)",
    re.IGNORECASE,
)
VULNERABLE_PATTERN = re.compile(
    r"\b(child|children|school|hospital|elderly|senior citizen)",
    re.IGNORECASE,
)
URGENT_PATTERN = re.compile(
    r"\b(urgent|immediately|emergency|asap|right now)",
    re.IGNORECASE,
)
DURATION_PATTERN = re.compile(
    r"\b(\d+)\s*(day|week|month|year)s?\b",
    re.IGNORECASE,
)

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


def reported_duration_days(text: str) -> Optional[int]:
    """Longest duration mentioned in the text, in days (e.g. "2 weeks" -> 14)."""
    durations = [
        int(amount) * _UNIT_DAYS[unit.lower()]
        for amount, unit in DURATION_PATTERN.findall(text)
    ]
    return max(durations) if durations else None


def _clamp_score(value: int) -> int:
    return max(1, min(5, value))


class RuleBasedPriorityScorer(Agent):
    """Deterministic priority scorer.

    Severity starts from the domain baseline; hazards add 2 and vulnerable
    groups add 1. Urgency starts at 2; a problem persisting a week or more
    adds 1, explicit urgency words add 1 and hazards add 2.
    """

    agent_type = AgentType.PRIORITY_SCORER

    def __init__(self, base_severity: Optional[Mapping[str, int]] = None):
        self.base_severity = dict(base_severity or DOMAIN_BASE_SEVERITY)

    async def _run(self, request: AgentRequest) -> PriorityScore:
        prior = request.prior(AgentType.CLASSIFIER)
        classification = None
        if prior is not None:
            classification = Classification.model_validate(prior)
        elif request.issue.classification is not None:
            classification = request.issue.classification
        return self.score_priority(request.issue.text, classification)

    def score_priority(
        self, text: str, classification: Optional[Classification]
    ) -> PriorityScore:
        reasons = []

        if classification is not None:
            domain = classification.domain
            severity = self.base_severity.get(domain, DEFAULT_SEVERITY)
            reasons.append(f"baseline severity {severity} for '{domain}'")
            confidence = 0.8
        else:
            severity = DEFAULT_SEVERITY
            reasons.append("no classification available; default severity")
            confidence = 0.5

        urgency = BASE_URGENCY

        hazard = HAZARD_PATTERN.search(text)
        if hazard:
            severity += 2
            urgency += 2
            reasons.append(f"hazard mentioned ('{hazard.group(0)}')")

        if VULNERABLE_PATTERN.search(text):
            severity += 1
            reasons.append("vulnerable people affected")

        days = reported_duration_days(text)
        if days is not None and days >= 7:
            urgency += 1
            reasons.append(f"problem reported as persisting {days} days")

        if URGENT_PATTERN.search(text):
            urgency += 1
            reasons.append("citizen marked the problem as urgent")

        severity = _clamp_score(severity)
        urgency = _clamp_score(urgency)

        return PriorityScore(
            severity=severity,
            urgency=urgency,
            confidence=confidence,
            reasoning=(
                f"Severity {severity}, urgency {urgency}: " + "; ".join(reasons) + "."
            ),
        )


PRIORITY_SYSTEM_PROMPT = """You are a municipal triage assistant. Rate a classified civic complaint.

You MUST respond with valid JSON only. Do not include any text before or after the JSON object.

- severity: integer 1-5 (1 = cosmetic, 5 = threat to life or property)
- urgency: integer 1-5 (1 = can wait months, 5 = needs action today)

Respond with this exact JSON structure:
{
  "severity": 1-5,
  "urgency": 1-5,
  "confidence": 0.0-1.0,
  "reasoning": "short explanation"
}"""


def normalize_llm_priority(data: Dict[str, Any]) -> PriorityScore:
    """Clamp a raw LLM reply into a valid PriorityScore."""

    def as_score(key: str) -> int:
        try:
            return _clamp_score(int(round(float(data.get(key, 3)))))
        except (TypeError, ValueError):
            return 3

    reasoning = str(data.get("reasoning") or "").strip() or "Model returned no reasoning."
    return PriorityScore(
        severity=as_score("severity"),
        urgency=as_score("urgency"),
        confidence=clamp_unit(data.get("confidence"), default=0.5),
        reasoning=reasoning,
    )


class LLMPriorityScorer(Agent):
    """LLM-backed priority scorer."""

    agent_type = AgentType.PRIORITY_SCORER

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def _run(self, request: AgentRequest) -> PriorityScore:
        prior = request.prior(AgentType.CLASSIFIER) or {}
        domain = prior.get("domain", "unclassified")
        prompt = (
            f"**Domain:** {domain}\n\n"
            f"**Complaint:**\n{request.issue.text or '(no description provided)'}\n\n"
            "Provide your analysis as JSON."
        )
        data = await self.provider.complete_json(
            self.agent_type.value, PRIORITY_SYSTEM_PROMPT, prompt
        )
        return normalize_llm_priority(data)
