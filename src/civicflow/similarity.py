"""Composite similarity between civic issues.

The duplicate detector scores a pair of issues from three signals:
- location: 1.0 within the saturation radius, then inverse-distance decay,
  0.0 beyond the maximum distance or when either location is missing
- domain: 1.0 when both issues were classified into the same domain
- time: linear decay from 1.0 (same instant) to 0.0 at the window edge

The weighted sum is the similarity score. Weights, radii and the window
are tunable; the defaults make two reports of the same spot, same domain,
a day apart score well above the 0.7 duplicate threshold.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from src.civicflow.agents.models import SimilarityFactor, SimilarityResult
from src.civicflow.models import GeoLocation, Issue


logger = logging.getLogger(__name__)


DEFAULT_DUPLICATE_THRESHOLD = 0.7
EARTH_RADIUS_METERS = 6_371_000.0


class SimilarityWeights(BaseModel):
    """Per-signal weights; must sum to 1 so scores stay in [0, 1]."""

    location: float = Field(default=0.4, ge=0.0, le=1.0)
    domain: float = Field(default=0.35, ge=0.0, le=1.0)
    time: float = Field(default=0.25, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_sum(self) -> "SimilarityWeights":
        total = self.location + self.domain + self.time
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"Similarity weights must sum to 1.0, got {total}")
        return self


class SimilarityParameters(BaseModel):
    """Tunable parameters of the similarity engine.

    Attributes:
        weights: Signal weights.
        saturation_radius_meters: Distances at or below this count as the same spot.
        max_distance_meters: Distances beyond this contribute nothing.
        time_window_days: Issues further apart than this contribute nothing.
    """

    weights: SimilarityWeights = Field(default_factory=SimilarityWeights)
    saturation_radius_meters: float = Field(default=50.0, gt=0.0)
    max_distance_meters: float = Field(default=2000.0, gt=0.0)
    time_window_days: float = Field(default=30.0, gt=0.0)


def haversine_meters(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two points in meters."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


class SimilarityEngine:
    """Scores issue pairs and decides duplicates against per-city thresholds."""

    def __init__(
        self,
        parameters: Optional[SimilarityParameters] = None,
        default_threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
    ):
        self.parameters = parameters or SimilarityParameters()
        self.default_threshold = default_threshold
        self._city_thresholds: Dict[str, float] = {}

    def update_similarity_thresholds(self, city_id: str, threshold: float) -> None:
        """Override the duplicate threshold for one city."""
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Similarity threshold must be in [0, 1], got {threshold}")
        self._city_thresholds[city_id] = threshold
        logger.info(
            "Similarity threshold updated",
            extra={"city_id": city_id, "threshold": threshold},
        )

    def threshold_for(self, city_id: str) -> float:
        return self._city_thresholds.get(city_id, self.default_threshold)

    def location_similarity(
        self, a: Optional[GeoLocation], b: Optional[GeoLocation]
    ) -> float:
        if a is None or b is None:
            return 0.0
        distance = haversine_meters(a, b)
        params = self.parameters
        if distance <= params.saturation_radius_meters:
            return 1.0
        if distance >= params.max_distance_meters:
            return 0.0
        return params.saturation_radius_meters / distance

    @staticmethod
    def domain_similarity(a: Optional[str], b: Optional[str]) -> float:
        if a is None or b is None:
            return 0.0
        return 1.0 if a == b else 0.0

    def time_similarity(self, a: datetime, b: datetime) -> float:
        days_apart = abs((a - b).total_seconds()) / 86400.0
        return max(0.0, 1.0 - days_apart / self.parameters.time_window_days)

    def compare(
        self,
        issue: Issue,
        candidate: Issue,
        threshold: Optional[float] = None,
        domain: Optional[str] = None,
    ) -> SimilarityResult:
        """Score ``candidate`` against ``issue``.

        Args:
            issue: The issue being checked.
            candidate: A previously stored issue.
            threshold: Duplicate threshold; defaults to the city threshold.
            domain: Domain of ``issue`` when it is not yet on the model
                (e.g. classified earlier in the same workflow).
        """
        weights = self.parameters.weights
        issue_domain = domain or (issue.classification.domain if issue.classification else None)
        candidate_domain = candidate.classification.domain if candidate.classification else None

        raw = {
            "location": self.location_similarity(issue.location, candidate.location),
            "domain": self.domain_similarity(issue_domain, candidate_domain),
            "time": self.time_similarity(issue.submitted_at, candidate.submitted_at),
        }
        factors = [
            SimilarityFactor(
                signal=signal,
                raw=round(value, 4),
                weight=getattr(weights, signal),
                contribution=round(value * getattr(weights, signal), 4),
            )
            for signal, value in raw.items()
        ]
        score = round(min(1.0, sum(f.contribution for f in factors)), 4)

        if threshold is None:
            threshold = self.threshold_for(issue.city_id)

        return SimilarityResult(
            candidate_issue_id=candidate.issue_id,
            score=score,
            factors=factors,
            is_duplicate=score > threshold,
        )
