"""Duplicate detection over a city's stored issues.

The detector compares a new issue with earlier issues of the same city
using the SimilarityEngine, and links it to the best-scoring candidate when
that candidate clears the city's duplicate threshold. The threshold lives in
the city's WorkflowConfig when a config registry is attached, so an update
applies to every workflow started afterwards. Duplicates always
point at a single primary; linking bumps the primary's affected count and
is idempotent, so a replayed detection step never double-counts.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from src.civicflow.agents.base import Agent, AgentRequest, AgentType
from src.civicflow.agents.models import DuplicateDetectionResult, SimilarityResult
from src.civicflow.errors import AgentExecutionError, NotFoundError
from src.civicflow.models import Issue
from src.civicflow.similarity import SimilarityEngine
from src.civicflow.storage import IssueStore
from src.civicflow.workflow_config import WorkflowConfigRegistry


logger = logging.getLogger(__name__)


class DuplicateDetector(Agent):
    """Finds and links duplicate reports of the same civic problem."""

    agent_type = AgentType.DUPLICATE_DETECTOR

    def __init__(
        self,
        issue_store: IssueStore,
        engine: Optional[SimilarityEngine] = None,
        configs: Optional[WorkflowConfigRegistry] = None,
    ):
        self.issue_store = issue_store
        self.engine = engine or SimilarityEngine()
        self.configs = configs

    def threshold_for(self, city_id: str) -> float:
        if self.configs is not None:
            return self.configs.get(city_id).similarity_threshold
        return self.engine.threshold_for(city_id)

    def update_similarity_thresholds(self, city_id: str, threshold: float) -> None:
        """Set a city's duplicate threshold for workflows started from now on.

        Raises:
            ValueError: If ``threshold`` is outside [0, 1].
        """
        self.engine.update_similarity_thresholds(city_id, threshold)
        if self.configs is not None:
            current = self.configs.get(city_id)
            self.configs.install(
                city_id, current.model_copy(update={"similarity_threshold": threshold})
            )

    async def find_similar_issues(
        self,
        issue: Issue,
        domain: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> List[SimilarityResult]:
        """Score earlier primary issues of the same city against ``issue``.

        Candidates outside the time window cannot score on time and are only
        considered if they were submitted within it. Results are sorted by
        descending score, earliest candidate first on ties.
        """
        if threshold is None:
            threshold = self.threshold_for(issue.city_id)
        window = timedelta(days=self.engine.parameters.time_window_days)
        candidates = await self.issue_store.list_by_city(
            issue.city_id, since=issue.submitted_at - window
        )

        scored = []
        for candidate in candidates:
            if candidate.issue_id == issue.issue_id:
                continue
            if candidate.duplicate_of is not None:
                continue
            if candidate.submitted_at > issue.submitted_at:
                continue
            result = self.engine.compare(issue, candidate, threshold=threshold, domain=domain)
            if result.score > 0.0:
                scored.append((result, candidate.submitted_at))

        scored.sort(key=lambda pair: (-pair[0].score, pair[1]))
        return [result for result, _ in scored]

    async def link_duplicate_issues(
        self, city_id: str, primary_id: str, duplicate_ids: Iterable[str]
    ) -> int:
        """Link duplicates to a primary; returns how many were newly linked."""
        duplicate_ids = list(duplicate_ids)
        newly_linked = await self.issue_store.link_duplicates(
            city_id, primary_id, duplicate_ids
        )
        logger.info(
            "Linked duplicate issues",
            extra={
                "city_id": city_id,
                "primary_id": primary_id,
                "requested": len(duplicate_ids),
                "newly_linked": newly_linked,
            },
        )
        return newly_linked

    async def _run(self, request: AgentRequest) -> DuplicateDetectionResult:
        issue = request.issue
        classification = request.prior(AgentType.CLASSIFIER) or {}

        try:
            similar = await self.find_similar_issues(
                issue,
                domain=classification.get("domain"),
                threshold=request.similarity_threshold,
            )
        except NotFoundError:
            raise
        except Exception as e:
            raise AgentExecutionError(
                self.agent_type.value, f"Similarity search failed: {e}", cause=e
            ) from e

        if not similar:
            return DuplicateDetectionResult(
                confidence=1.0,
                reasoning="No earlier issues nearby in place, domain or time.",
            )

        best = similar[0]
        confidence = round(max(best.score, 1.0 - best.score), 4)

        if not best.is_duplicate:
            return DuplicateDetectionResult(
                similar_issues=similar[:5],
                confidence=confidence,
                reasoning=(
                    f"Closest issue {best.candidate_issue_id} scored {best.score:.2f}, "
                    f"below the duplicate threshold {request.similarity_threshold:.2f}."
                ),
            )

        newly_linked = await self.link_duplicate_issues(
            issue.city_id, best.candidate_issue_id, [issue.issue_id]
        )
        return DuplicateDetectionResult(
            similar_issues=similar[:5],
            primary_issue_id=best.candidate_issue_id,
            newly_linked=newly_linked,
            confidence=confidence,
            reasoning=(
                f"Issue {best.candidate_issue_id} scored {best.score:.2f} "
                f"(threshold {request.similarity_threshold:.2f}); linked as duplicate."
            ),
        )
