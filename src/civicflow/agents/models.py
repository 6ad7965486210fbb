"""Result models produced by the analysis agents.

This module defines the structured outputs of each agent role:
- Classification: civic domain with confidence and ranked alternatives
- PriorityScore: severity/urgency with derived priority and escalation flag
- SimilarityResult: composite similarity against one candidate issue
- DuplicateDetectionResult: outcome of a duplicate-detection step
- InsightResult: per-issue emerging-trend signal

The models use Pydantic for validation, consistent with the state and
audit models.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


# Default civic domain list, used when a city supplies none
DEFAULT_DOMAINS: tuple = (
    "Roads & Potholes",
    "Electricity/Street Lighting",
    "Water Supply",
    "Sewage & Drainage",
    "Waste Management",
    "Public Transport",
    "Traffic & Parking",
    "Parks & Public Spaces",
    "Public Health & Sanitation",
    "Noise Pollution",
    "Air Pollution",
    "Building & Construction",
    "Stray Animals",
    "Public Safety",
    "Encroachment",
    "Tax & Billing",
    "Other",
)

ESCALATION_LEVEL = 4


class DomainAlternative(BaseModel):
    """A runner-up domain considered by the classifier."""

    domain: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)


class Classification(BaseModel):
    """Result of classifying a complaint into a civic domain.

    Attributes:
        domain: One of the city's configured domains.
        confidence: Classifier confidence (0.0-1.0).
        reasoning: Explanation of the decision. Never empty.
        alternatives: Other candidate domains, best first.
    """

    domain: str = Field(..., min_length=1, description="Civic domain")

    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Confidence in the classification (0.0-1.0)",
    )

    reasoning: str = Field(
        ...,
        min_length=1,
        description="Explanation of the classification decision",
    )

    alternatives: List[DomainAlternative] = Field(
        default_factory=list,
        description="Ranked alternative domains, best first",
    )

    @field_validator("alternatives")
    @classmethod
    def sort_alternatives(cls, v: List[DomainAlternative]) -> List[DomainAlternative]:
        return sorted(v, key=lambda alt: alt.confidence, reverse=True)


class PriorityScore(BaseModel):
    """Severity and urgency assessment of a classified issue.

    The overall priority and the escalation flag are derived from the two
    scores and cannot be supplied independently.

    Attributes:
        severity: Impact of the problem (1-5).
        urgency: How soon it must be addressed (1-5).
        reasoning: Explanation of the scores.
        confidence: Scorer confidence (0.0-1.0).
    """

    severity: int = Field(..., ge=1, le=5)
    urgency: int = Field(..., ge=1, le=5)
    reasoning: str = Field(..., min_length=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("severity", "urgency", mode="before")
    @classmethod
    def reject_fractional_scores(cls, v):
        if isinstance(v, float) and not v.is_integer():
            raise ValueError(f"Score must be an integer, got {v}")
        return v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall_priority(self) -> float:
        """Composite priority, non-decreasing in both severity and urgency."""
        return round(
            max(self.severity, self.urgency) + (self.severity * self.urgency) / 25,
            2,
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def escalation_required(self) -> bool:
        return self.severity >= ESCALATION_LEVEL or self.urgency >= ESCALATION_LEVEL


class SimilarityFactor(BaseModel):
    """Contribution of one signal to a similarity score.

    Attributes:
        signal: "location", "domain" or "time".
        raw: Signal similarity before weighting (0.0-1.0).
        weight: Weight applied to the signal.
        contribution: raw * weight.
    """

    signal: str
    raw: float = Field(..., ge=0.0, le=1.0)
    weight: float = Field(..., ge=0.0, le=1.0)
    contribution: float = Field(..., ge=0.0, le=1.0)


class SimilarityResult(BaseModel):
    """Similarity of an issue to one candidate issue."""

    candidate_issue_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    factors: List[SimilarityFactor] = Field(default_factory=list)
    is_duplicate: bool = False


class DuplicateDetectionResult(BaseModel):
    """Outcome of a duplicate-detection step for one issue.

    Attributes:
        similar_issues: Candidates ordered by descending score.
        primary_issue_id: Issue this one was linked to, if any.
        newly_linked: Number of duplicates newly linked by this step.
        confidence: Detector confidence (best score, or 1.0 when no match).
        reasoning: Human-readable summary.
    """

    similar_issues: List[SimilarityResult] = Field(default_factory=list)
    primary_issue_id: Optional[str] = None
    newly_linked: int = Field(default=0, ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1)


class InsightResult(BaseModel):
    """Emerging-trend signal for the (domain, area) pair of one issue."""

    domain: str
    area: Optional[str] = None
    emerging: bool = False
    current_count: int = Field(default=0, ge=0)
    baseline_count: float = Field(default=0.0, ge=0.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reasoning: str = Field(..., min_length=1)
