"""Human-readable explanations of agent decisions.

An explanation only ever surfaces the reasoning already attached to a
decision; it never re-derives or invents one. When the citizen's language
differs from the language the reasoning was written in, a pluggable
Translator localizes it. If translation fails the original text is shown.
"""

import logging
from typing import Any, List, Optional, Protocol, Tuple, Union, runtime_checkable

from pydantic import BaseModel, Field

from src.civicflow.agents.llm import LLMProvider
from src.civicflow.agents.models import (
    Classification,
    DuplicateDetectionResult,
    InsightResult,
    PriorityScore,
    SimilarityResult,
)
from src.civicflow.audit.log import ExecutionLog
from src.civicflow.audit.models import ProcessingStepRecord
from src.civicflow.errors import AgentExecutionError, NotFoundError


logger = logging.getLogger(__name__)


REASONING_LANGUAGE = "en"

Decision = Union[
    Classification,
    PriorityScore,
    SimilarityResult,
    DuplicateDetectionResult,
    InsightResult,
    ProcessingStepRecord,
]


class Explanation(BaseModel):
    """Explanation of one decision in a target language.

    Attributes:
        decision_type: Kind of decision explained.
        language: Language of ``summary`` and ``reasoning``.
        summary: One-line statement of the decision.
        reasoning: The decision's own reasoning, localized when possible.
        original_reasoning: The reasoning exactly as recorded.
        translated: Whether ``reasoning`` was translated.
        confidence: Confidence attached to the decision, if any.
        details: Supporting facts carried by the decision itself.
    """

    decision_type: str
    language: str
    summary: str
    reasoning: str
    original_reasoning: str
    translated: bool = False
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    details: List[str] = Field(default_factory=list)


@runtime_checkable
class Translator(Protocol):
    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        ...


class IdentityTranslator:
    """Returns text unchanged; explanations stay in the recorded language."""

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        return text


class LLMTranslator:
    """Translates through the shared chat-model provider."""

    SYSTEM_PROMPT = (
        "You translate short civic-service texts faithfully. Do not add, drop or "
        'soften information. Respond with JSON only: {"translation": "..."}'
    )

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        data = await self.provider.complete_json(
            "translator",
            self.SYSTEM_PROMPT,
            f"Translate from {source_language} to {target_language}:\n\n{text}",
        )
        translation = data.get("translation")
        if not isinstance(translation, str) or not translation.strip():
            raise AgentExecutionError("translator", "Response has no translation")
        return translation


def _describe(decision: Decision) -> Tuple[str, str, Optional[float], str, List[str]]:
    """(decision_type, summary, confidence, reasoning, details) of a decision."""
    if isinstance(decision, Classification):
        details = [f"Also considered: {a.domain} ({a.confidence:.2f})" for a in decision.alternatives]
        return (
            "classification",
            f"Classified as {decision.domain} (confidence {decision.confidence:.2f}).",
            decision.confidence,
            decision.reasoning,
            details,
        )
    if isinstance(decision, PriorityScore):
        summary = (
            f"Severity {decision.severity}/5, urgency {decision.urgency}/5, "
            f"overall priority {decision.overall_priority:.2f}."
        )
        if decision.escalation_required:
            summary += " Escalated to city staff."
        return "priority", summary, decision.confidence, decision.reasoning, []
    if isinstance(decision, SimilarityResult):
        details = [
            f"{f.signal}: {f.raw:.2f} x weight {f.weight:.2f} = {f.contribution:.2f}"
            for f in decision.factors
        ]
        verdict = "a duplicate of" if decision.is_duplicate else "similar to"
        summary = f"Scored {decision.score:.2f}; {verdict} issue {decision.candidate_issue_id}."
        return "similarity", summary, decision.score, summary, details
    if isinstance(decision, DuplicateDetectionResult):
        if decision.primary_issue_id:
            summary = f"Linked as a duplicate of issue {decision.primary_issue_id}."
        else:
            summary = "No duplicate found."
        details = [
            f"Issue {s.candidate_issue_id}: score {s.score:.2f}" for s in decision.similar_issues
        ]
        return "duplicate_detection", summary, decision.confidence, decision.reasoning, details
    if isinstance(decision, InsightResult):
        where = decision.area or "the city"
        state = "emerging" if decision.emerging else "within usual volume"
        return (
            "insight",
            f"'{decision.domain}' in {where} is {state}.",
            decision.confidence,
            decision.reasoning,
            [],
        )
    if isinstance(decision, ProcessingStepRecord):
        actor = decision.agent_type.value if decision.agent_type else decision.actor
        summary = f"{decision.kind.value} by {actor}"
        summary += " succeeded." if decision.success else f" failed: {decision.error}"
        return decision.kind.value, summary, decision.confidence, decision.reasoning, []
    raise TypeError(f"Cannot explain {type(decision).__name__}")


class ExplainabilityEngine:
    """Explains decisions and exposes their audit trail."""

    def __init__(
        self,
        execution_log: ExecutionLog,
        translator: Optional[Translator] = None,
        reasoning_language: str = REASONING_LANGUAGE,
    ):
        self.execution_log = execution_log
        self.translator = translator or IdentityTranslator()
        self.reasoning_language = reasoning_language

    async def explain(self, decision: Decision, language: str = REASONING_LANGUAGE) -> Explanation:
        """Explain a decision in ``language``.

        Raises:
            TypeError: If the object is not a known decision type.
        """
        decision_type, summary, confidence, reasoning, details = _describe(decision)

        translated = False
        shown_summary, shown_reasoning = summary, reasoning
        if language != self.reasoning_language and not isinstance(
            self.translator, IdentityTranslator
        ):
            try:
                shown_summary = await self._translate(summary, language)
                shown_reasoning = await self._translate(reasoning, language)
                translated = True
            except Exception as e:
                logger.warning(
                    "Translation failed; showing recorded reasoning",
                    extra={"language": language, "decision_type": decision_type, "error": str(e)},
                )
                shown_summary, shown_reasoning = summary, reasoning

        return Explanation(
            decision_type=decision_type,
            language=language if translated else self.reasoning_language,
            summary=shown_summary,
            reasoning=shown_reasoning,
            original_reasoning=reasoning,
            translated=translated,
            confidence=confidence,
            details=details,
        )

    async def _translate(self, text: str, language: str) -> str:
        return await self.translator.translate(text, self.reasoning_language, language)

    async def get_decision_audit_trail(self, issue_id: str) -> List[ProcessingStepRecord]:
        """Ordered audit records of an issue.

        Raises:
            NotFoundError: If the issue has no records.
        """
        records = await self.execution_log.for_issue(issue_id)
        if not records:
            raise NotFoundError("issue", issue_id)
        return records

    async def explain_issue(self, issue: Any, language: str = REASONING_LANGUAGE) -> List[Explanation]:
        """Explain every decision currently held by an issue."""
        explanations = []
        for decision in (issue.classification, issue.priority):
            if decision is not None:
                explanations.append(await self.explain(decision, language))
        for similar in issue.similar_issues:
            explanations.append(await self.explain(similar, language))
        return explanations
