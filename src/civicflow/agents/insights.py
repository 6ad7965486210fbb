"""Aggregate insights over persisted, classified issues.

The insight generator is a batch/query component: reports read from the
issue store and never mutate it. It also implements the agent interface so
a workflow can tag each new issue with whether its (domain, area) pair is
currently emerging.

Emerging-issue rule: for a (domain, area) pair, the current window's issue
count and total severity must both exceed the rolling baseline (mean of the
preceding windows) by the growth rate, with at least ``min_count`` issues
in the current window.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from src.civicflow.agents.base import Agent, AgentRequest, AgentType
from src.civicflow.agents.models import InsightResult
from src.civicflow.models import Issue, IssueStatus
from src.civicflow.storage import IssueStore


logger = logging.getLogger(__name__)


UNASSIGNED_AREA = "unassigned"
RESOLVED_STATUSES = {IssueStatus.RESOLVED, IssueStatus.CLOSED}

PairKey = Tuple[str, str]


class EmergingIssue(BaseModel):
    """A (domain, area) pair growing faster than its baseline."""

    domain: str
    area: str
    current_count: int
    baseline_count: float
    current_severity: int
    baseline_severity: float
    growth_rate: float


class WeeklyReport(BaseModel):
    """Summary of one week of a city's issues."""

    city_id: str
    week_start: datetime
    week_end: datetime
    total_issues: int
    by_domain: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    escalations: int = 0
    duplicates: int = 0
    flagged_for_review: int = 0
    average_priority: Optional[float] = None
    emerging_issues: List[EmergingIssue] = Field(default_factory=list)


class ResolutionMetrics(BaseModel):
    """Resolution performance of a city."""

    city_id: str
    total_issues: int
    resolved_issues: int
    resolution_rate: float
    mean_hours_to_resolve: Optional[float] = None
    by_domain: Dict[str, float] = Field(
        default_factory=dict, description="Resolution rate per domain"
    )


class AreaComparison(BaseModel):
    """Headline numbers for one area of a city."""

    area: str
    total_issues: int
    mean_severity: Optional[float] = None
    resolution_rate: float
    top_domain: Optional[str] = None


def _is_counted(issue: Issue) -> bool:
    return issue.classification is not None and issue.duplicate_of is None


def _pair(issue: Issue) -> PairKey:
    return issue.classification.domain, issue.area or UNASSIGNED_AREA


def _severity(issue: Issue) -> int:
    return issue.priority.severity if issue.priority else 1


class InsightGenerator(Agent):
    """Reports and trend detection over a city's issues.

    Attributes:
        issue_store: Storage collaborator (read-only use).
        window_days: Length of one rolling window.
        baseline_windows: Number of preceding windows forming the baseline.
        growth_rate: Required relative growth over baseline (0.5 = +50%).
        min_count: Minimum issues in the current window to flag a pair.
    """

    agent_type = AgentType.INSIGHT_GENERATOR

    def __init__(
        self,
        issue_store: IssueStore,
        window_days: int = 7,
        baseline_windows: int = 4,
        growth_rate: float = 0.5,
        min_count: int = 3,
    ):
        if window_days < 1 or baseline_windows < 1:
            raise ValueError("window_days and baseline_windows must be at least 1")
        if growth_rate < 0:
            raise ValueError("growth_rate must be non-negative")
        self.issue_store = issue_store
        self.window_days = window_days
        self.baseline_windows = baseline_windows
        self.growth_rate = growth_rate
        self.min_count = min_count

    async def identify_emerging_issues(
        self, city_id: str, now: Optional[datetime] = None
    ) -> List[EmergingIssue]:
        now = now or datetime.now(timezone.utc)
        window = timedelta(days=self.window_days)
        earliest = now - window * (self.baseline_windows + 1)
        issues = await self.issue_store.list_by_city(city_id, since=earliest)
        return self._emerging(issues, now)

    def _emerging(self, issues: Iterable[Issue], now: datetime) -> List[EmergingIssue]:
        window = timedelta(days=self.window_days)
        current_start = now - window

        current_counts: Counter = Counter()
        current_severity: Counter = Counter()
        # per pair, per baseline window index
        past_counts: Dict[PairKey, Counter] = defaultdict(Counter)
        past_severity: Dict[PairKey, Counter] = defaultdict(Counter)

        for issue in issues:
            if not _is_counted(issue) or issue.submitted_at >= now:
                continue
            key = _pair(issue)
            if issue.submitted_at >= current_start:
                current_counts[key] += 1
                current_severity[key] += _severity(issue)
                continue
            index = int((current_start - issue.submitted_at) / window)
            if index < self.baseline_windows:
                past_counts[key][index] += 1
                past_severity[key][index] += _severity(issue)

        threshold = 1.0 + self.growth_rate
        emerging = []
        for key, count in current_counts.items():
            baseline_count = sum(past_counts[key].values()) / self.baseline_windows
            baseline_severity = sum(past_severity[key].values()) / self.baseline_windows
            if count < self.min_count:
                continue
            if count <= baseline_count * threshold:
                continue
            if current_severity[key] <= baseline_severity * threshold:
                continue
            growth = (
                (count - baseline_count) / baseline_count if baseline_count else float(count)
            )
            emerging.append(
                EmergingIssue(
                    domain=key[0],
                    area=key[1],
                    current_count=count,
                    baseline_count=baseline_count,
                    current_severity=current_severity[key],
                    baseline_severity=baseline_severity,
                    growth_rate=round(growth, 3),
                )
            )

        emerging.sort(key=lambda e: e.growth_rate, reverse=True)
        return emerging

    async def generate_weekly_report(
        self, city_id: str, week_start: datetime
    ) -> WeeklyReport:
        week_end = week_start + timedelta(days=7)
        issues = [
            issue
            for issue in await self.issue_store.list_by_city(city_id, since=week_start)
            if issue.submitted_at < week_end
        ]

        priorities = [i.priority.overall_priority for i in issues if i.priority]
        report = WeeklyReport(
            city_id=city_id,
            week_start=week_start,
            week_end=week_end,
            total_issues=len(issues),
            by_domain=dict(
                Counter(i.classification.domain for i in issues if i.classification)
            ),
            by_status=dict(Counter(i.status.value for i in issues)),
            escalations=sum(
                1 for i in issues if i.priority and i.priority.escalation_required
            ),
            duplicates=sum(1 for i in issues if i.duplicate_of is not None),
            flagged_for_review=sum(1 for i in issues if i.needs_review),
            average_priority=round(mean(priorities), 2) if priorities else None,
            emerging_issues=await self.identify_emerging_issues(city_id, now=week_end),
        )

        logger.info(
            "Weekly report generated",
            extra={"city_id": city_id, "total_issues": report.total_issues},
        )
        return report

    async def analyze_resolution_metrics(self, city_id: str) -> ResolutionMetrics:
        issues = [
            i for i in await self.issue_store.list_by_city(city_id)
            if i.duplicate_of is None
        ]
        resolved = [i for i in issues if i.status in RESOLVED_STATUSES]
        hours = [
            (i.resolved_at - i.submitted_at).total_seconds() / 3600.0
            for i in resolved
            if i.resolved_at is not None
        ]

        per_domain: Dict[str, List[bool]] = defaultdict(list)
        for issue in issues:
            if issue.classification:
                per_domain[issue.classification.domain].append(
                    issue.status in RESOLVED_STATUSES
                )

        return ResolutionMetrics(
            city_id=city_id,
            total_issues=len(issues),
            resolved_issues=len(resolved),
            resolution_rate=round(len(resolved) / len(issues), 4) if issues else 0.0,
            mean_hours_to_resolve=round(mean(hours), 2) if hours else None,
            by_domain={
                domain: round(sum(flags) / len(flags), 4)
                for domain, flags in per_domain.items()
            },
        )

    async def compare_areas(
        self, city_id: str, areas: Optional[Iterable[str]] = None
    ) -> List[AreaComparison]:
        issues = [
            i for i in await self.issue_store.list_by_city(city_id)
            if i.duplicate_of is None
        ]
        by_area: Dict[str, List[Issue]] = defaultdict(list)
        for issue in issues:
            by_area[issue.area or UNASSIGNED_AREA].append(issue)

        wanted = list(areas) if areas is not None else sorted(by_area)
        comparisons = []
        for area in wanted:
            area_issues = by_area.get(area, [])
            severities = [i.priority.severity for i in area_issues if i.priority]
            domains = Counter(
                i.classification.domain for i in area_issues if i.classification
            )
            resolved = sum(1 for i in area_issues if i.status in RESOLVED_STATUSES)
            comparisons.append(
                AreaComparison(
                    area=area,
                    total_issues=len(area_issues),
                    mean_severity=round(mean(severities), 2) if severities else None,
                    resolution_rate=(
                        round(resolved / len(area_issues), 4) if area_issues else 0.0
                    ),
                    top_domain=domains.most_common(1)[0][0] if domains else None,
                )
            )
        return comparisons

    async def _run(self, request: AgentRequest) -> InsightResult:
        issue = request.issue
        classification = request.prior(AgentType.CLASSIFIER)
        domain = (
            classification["domain"] if classification
            else issue.classification.domain if issue.classification
            else None
        )
        if domain is None:
            return InsightResult(
                domain="unclassified",
                area=issue.area,
                confidence=0.5,
                reasoning="Issue has no classification; trend check skipped.",
            )

        area = issue.area or UNASSIGNED_AREA
        emerging = await self.identify_emerging_issues(
            issue.city_id, now=issue.submitted_at + timedelta(seconds=1)
        )
        match = next((e for e in emerging if e.domain == domain and e.area == area), None)
        if match is None:
            return InsightResult(
                domain=domain,
                area=area,
                reasoning=f"'{domain}' in {area} is within its usual volume.",
            )
        return InsightResult(
            domain=domain,
            area=area,
            emerging=True,
            current_count=match.current_count,
            baseline_count=match.baseline_count,
            reasoning=(
                f"'{domain}' in {area} is emerging: {match.current_count} issues this "
                f"window vs a baseline of {match.baseline_count:.1f}."
            ),
        )
