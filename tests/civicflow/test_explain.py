"""Tests for decision explanations and the issue audit trail."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.civicflow.agents.llm import LLMProvider
from src.civicflow.agents.models import (
    Classification,
    DomainAlternative,
    DuplicateDetectionResult,
    InsightResult,
    PriorityScore,
    SimilarityResult,
)
from src.civicflow.audit.log import ExecutionLog
from src.civicflow.audit.models import RecordKind
from src.civicflow.errors import AgentExecutionError, NotFoundError
from src.civicflow.explain import ExplainabilityEngine, LLMTranslator
from src.civicflow.models import Issue
from src.civicflow.similarity import SimilarityEngine
from src.civicflow.state.memory import InMemoryWorkflowStore

from tests.civicflow.factories import make_submission, run_async


def _classification() -> Classification:
    return Classification(
        domain="Electricity/Street Lighting",
        confidence=0.7,
        reasoning="Matched keywords for Electricity/Street Lighting: streetlight",
        alternatives=[DomainAlternative(domain="Public Safety", confidence=0.2)],
    )


def _engine(translator=None) -> ExplainabilityEngine:
    return ExplainabilityEngine(ExecutionLog(InMemoryWorkflowStore()), translator=translator)


def _translator(side_effect=None) -> MagicMock:
    translator = MagicMock()
    translator.translate = AsyncMock(
        side_effect=side_effect or (lambda text, source, target: f"[{target}] {text}")
    )
    return translator


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------


def test_classification_explanation_uses_recorded_reasoning():
    decision = _classification()

    explanation = run_async(_engine().explain(decision))

    assert explanation.decision_type == "classification"
    assert explanation.reasoning == decision.reasoning
    assert explanation.original_reasoning == decision.reasoning
    assert explanation.confidence == 0.7
    assert "Electricity/Street Lighting" in explanation.summary
    assert explanation.details == ["Also considered: Public Safety (0.20)"]
    assert explanation.translated is False


def test_priority_explanation_mentions_escalation():
    decision = PriorityScore(severity=5, urgency=4, reasoning="Live wire near a school")
    explanation = run_async(_engine().explain(decision))
    assert "Severity 5/5" in explanation.summary
    assert "Escalated" in explanation.summary
    assert explanation.reasoning == "Live wire near a school"


def test_similarity_explanation_lists_factor_contributions():
    submission = make_submission()
    decision = SimilarityEngine().compare(
        Issue.from_submission(submission), Issue.from_submission(submission)
    )

    explanation = run_async(_engine().explain(decision))

    assert explanation.decision_type == "similarity"
    assert len(explanation.details) == 3
    assert explanation.details[0].startswith("location:")


def test_duplicate_and_insight_explanations():
    duplicate = DuplicateDetectionResult(
        similar_issues=[SimilarityResult(candidate_issue_id="first", score=0.91, is_duplicate=True)],
        primary_issue_id="first",
        newly_linked=1,
        confidence=0.91,
        reasoning="Linked to the earlier report at the same spot",
    )
    insight = InsightResult(domain="Water Supply", area="Aundh", reasoning="Within usual volume")

    dup_explanation = run_async(_engine().explain(duplicate))
    insight_explanation = run_async(_engine().explain(insight))

    assert dup_explanation.summary == "Linked as a duplicate of issue first."
    assert dup_explanation.details == ["Issue first: score 0.91"]
    assert insight_explanation.summary == "'Water Supply' in Aundh is within usual volume."


def test_unknown_decision_type_rejected():
    with pytest.raises(TypeError):
        run_async(_engine().explain({"domain": "Roads"}))


# ---------------------------------------------------------------------------
# Localization
# ---------------------------------------------------------------------------


def test_explanation_translated_to_citizen_language():
    translator = _translator()
    decision = _classification()

    explanation = run_async(_engine(translator).explain(decision, language="mr"))

    assert explanation.translated is True
    assert explanation.language == "mr"
    assert explanation.reasoning == f"[mr] {decision.reasoning}"
    assert explanation.original_reasoning == decision.reasoning
    assert translator.translate.await_count == 2


def test_translation_failure_falls_back_to_original():
    translator = _translator(side_effect=AgentExecutionError("translator", "timeout"))
    decision = _classification()

    explanation = run_async(_engine(translator).explain(decision, language="hi"))

    assert explanation.translated is False
    assert explanation.language == "en"
    assert explanation.reasoning == decision.reasoning


def test_same_language_skips_translator():
    translator = _translator()
    run_async(_engine(translator).explain(_classification(), language="en"))
    translator.translate.assert_not_awaited()


def test_llm_translator_reads_translation_field():
    provider = MagicMock(spec=LLMProvider)
    provider.complete_json = AsyncMock(return_value={"translation": "रस्त्यावरील दिवा बंद"})

    text = run_async(LLMTranslator(provider).translate("Streetlight broken", "en", "mr"))

    assert text == "रस्त्यावरील दिवा बंद"
    assert provider.complete_json.call_args.args[0] == "translator"


def test_llm_translator_rejects_empty_translation():
    provider = MagicMock(spec=LLMProvider)
    provider.complete_json = AsyncMock(return_value={"translation": "  "})
    with pytest.raises(AgentExecutionError):
        run_async(LLMTranslator(provider).translate("text", "en", "mr"))


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


def test_audit_trail_of_unknown_issue_raises_not_found():
    with pytest.raises(NotFoundError):
        run_async(_engine().get_decision_audit_trail("missing"))


def test_audit_trail_and_issue_explanations(make_orchestrator):
    orchestrator = make_orchestrator()
    engine = ExplainabilityEngine(orchestrator.execution_log)

    async def scenario():
        receipt = await orchestrator.submit_issue(
            make_submission("Streetlight broken on MG Road for 2 weeks")
        )
        issue = await orchestrator.process_issue(receipt.tracking_id)
        trail = await engine.get_decision_audit_trail(issue.issue_id)
        explanations = await engine.explain_issue(issue)
        record_explanation = await engine.explain(trail[0])
        return trail, explanations, record_explanation

    trail, explanations, record_explanation = run_async(scenario())

    assert trail[0].kind == RecordKind.INTAKE
    assert [r.sequence for r in trail] == sorted(r.sequence for r in trail)
    assert [e.decision_type for e in explanations] == ["classification", "priority"]
    assert all(e.reasoning for e in explanations)
    assert record_explanation.decision_type == "intake"
    assert record_explanation.summary.endswith("succeeded.")
