"""Tests for the insight generator's reports and trend detection."""

from datetime import timedelta

import pytest

from src.civicflow.agents.base import AgentRequest
from src.civicflow.agents.insights import InsightGenerator
from src.civicflow.agents.models import Classification, PriorityScore
from src.civicflow.models import GeoLocation, Issue, IssueStatus
from src.civicflow.storage import InMemoryIssueStore

from tests.civicflow.factories import BASE_TIME, days, run_async


NOW = BASE_TIME + days(35)


def _issue(
    domain: str,
    area: str,
    at,
    severity: int = 3,
    status: IssueStatus = IssueStatus.PROCESSED,
    **updates,
) -> Issue:
    return Issue(
        city_id="pune",
        text=f"{domain} complaint",
        location=GeoLocation(latitude=18.5, longitude=73.8, area=area),
        submitted_at=at,
        status=status,
        classification=Classification(domain=domain, confidence=0.8, reasoning="keyword"),
        priority=PriorityScore(severity=severity, urgency=2, reasoning="rule"),
        **updates,
    )


def _generator(*issues: Issue) -> InsightGenerator:
    store = InMemoryIssueStore()
    for issue in issues:
        run_async(store.store(issue))
    return InsightGenerator(store)


def _trend_issues():
    issues = []
    # Garbage in Kothrud: one per baseline week, four this week
    for week in range(1, 5):
        issues.append(_issue("Waste Management", "Kothrud", NOW - days(7 * week + 2)))
    for hours in (2, 20, 40, 60):
        issues.append(_issue("Waste Management", "Kothrud", NOW - timedelta(hours=hours)))
    # Potholes in Shivajinagar: steady three a week
    for week in range(0, 5):
        for offset in (1, 2, 3):
            issues.append(
                _issue("Roads & Potholes", "Shivajinagar", NOW - days(7 * week + offset))
            )
    return issues


# ---------------------------------------------------------------------------
# Emerging issues
# ---------------------------------------------------------------------------


def test_growing_pair_is_emerging_and_steady_pair_is_not():
    generator = _generator(*_trend_issues())

    emerging = run_async(generator.identify_emerging_issues("pune", now=NOW))

    assert [(e.domain, e.area) for e in emerging] == [("Waste Management", "Kothrud")]
    trend = emerging[0]
    assert trend.current_count == 4
    assert trend.baseline_count == 1.0
    assert trend.current_severity == 12
    assert trend.growth_rate == pytest.approx(3.0)


def test_pair_below_minimum_count_never_emerges():
    issues = [
        _issue("Noise Pollution", "Baner", NOW - timedelta(hours=h)) for h in (1, 2)
    ]
    generator = _generator(*issues)
    assert run_async(generator.identify_emerging_issues("pune", now=NOW)) == []


def test_duplicates_and_unclassified_issues_not_counted():
    issues = [
        _issue("Water Supply", "Aundh", NOW - timedelta(hours=h), duplicate_of="primary")
        for h in (1, 2, 3, 4)
    ]
    unclassified = Issue(city_id="pune", text="???", submitted_at=NOW - timedelta(hours=1))
    generator = _generator(*issues, unclassified)
    assert run_async(generator.identify_emerging_issues("pune", now=NOW)) == []


def test_low_severity_growth_is_not_emerging():
    issues = [
        _issue("Parks & Public Spaces", "Baner", NOW - days(7 * w + 2), severity=5)
        for w in range(1, 5)
    ]
    issues += [
        _issue("Parks & Public Spaces", "Baner", NOW - timedelta(hours=h), severity=1)
        for h in (1, 2, 3, 4, 5, 6, 7)
    ]
    generator = _generator(*issues)
    # count 7 > 1.5 but severity 7 <= 5 * 1.5
    assert run_async(generator.identify_emerging_issues("pune", now=NOW)) == []


def test_invalid_generator_parameters_rejected():
    with pytest.raises(ValueError):
        InsightGenerator(InMemoryIssueStore(), window_days=0)
    with pytest.raises(ValueError):
        InsightGenerator(InMemoryIssueStore(), growth_rate=-0.1)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def test_weekly_report_summarizes_the_week():
    week_start = BASE_TIME
    issues = [
        _issue("Roads & Potholes", "Kothrud", week_start + days(1)),
        _issue("Roads & Potholes", "Kothrud", week_start + days(2), duplicate_of="x"),
        _issue("Public Safety", "Baner", week_start + days(3), severity=5),
        _issue(
            "Water Supply",
            "Aundh",
            week_start + days(4),
            status=IssueStatus.PENDING_REVIEW,
            needs_review=True,
        ),
        _issue("Water Supply", "Aundh", week_start + days(8)),
        _issue("Water Supply", "Aundh", week_start - days(1)),
    ]
    generator = _generator(*issues)

    report = run_async(generator.generate_weekly_report("pune", week_start))

    assert report.total_issues == 4
    assert report.week_end == week_start + days(7)
    assert report.by_domain == {
        "Roads & Potholes": 2,
        "Public Safety": 1,
        "Water Supply": 1,
    }
    assert report.by_status == {"processed": 3, "pending_review": 1}
    assert report.escalations == 1
    assert report.duplicates == 1
    assert report.flagged_for_review == 1
    assert report.average_priority is not None
    assert report.emerging_issues == []


def test_weekly_report_for_empty_week():
    report = run_async(_generator().generate_weekly_report("pune", BASE_TIME))
    assert report.total_issues == 0
    assert report.average_priority is None


def test_resolution_metrics():
    issues = [
        _issue(
            "Roads & Potholes",
            "Kothrud",
            BASE_TIME,
            status=IssueStatus.RESOLVED,
            resolved_at=BASE_TIME + timedelta(hours=24),
        ),
        _issue(
            "Water Supply",
            "Aundh",
            BASE_TIME,
            status=IssueStatus.CLOSED,
            resolved_at=BASE_TIME + timedelta(hours=48),
        ),
        _issue("Water Supply", "Aundh", BASE_TIME + days(1)),
        _issue("Water Supply", "Aundh", BASE_TIME + days(1), duplicate_of="x"),
    ]
    generator = _generator(*issues)

    metrics = run_async(generator.analyze_resolution_metrics("pune"))

    assert metrics.total_issues == 3
    assert metrics.resolved_issues == 2
    assert metrics.resolution_rate == pytest.approx(0.6667)
    assert metrics.mean_hours_to_resolve == pytest.approx(36.0)
    assert metrics.by_domain == {"Roads & Potholes": 1.0, "Water Supply": 0.5}


def test_resolution_metrics_without_issues():
    metrics = run_async(_generator().analyze_resolution_metrics("pune"))
    assert metrics.resolution_rate == 0.0
    assert metrics.mean_hours_to_resolve is None


def test_compare_areas():
    issues = [
        _issue("Roads & Potholes", "Kothrud", BASE_TIME, severity=2),
        _issue("Roads & Potholes", "Kothrud", BASE_TIME, severity=4),
        _issue("Waste Management", "Kothrud", BASE_TIME, status=IssueStatus.RESOLVED),
        _issue("Water Supply", "Aundh", BASE_TIME),
    ]
    generator = _generator(*issues)

    kothrud, nowhere = run_async(generator.compare_areas("pune", ["Kothrud", "Nowhere"]))

    assert kothrud.total_issues == 3
    assert kothrud.mean_severity == pytest.approx(3.0)
    assert kothrud.top_domain == "Roads & Potholes"
    assert kothrud.resolution_rate == pytest.approx(0.3333)
    assert nowhere.total_issues == 0
    assert nowhere.mean_severity is None
    assert nowhere.top_domain is None

    all_areas = run_async(generator.compare_areas("pune"))
    assert [c.area for c in all_areas] == ["Aundh", "Kothrud"]


# ---------------------------------------------------------------------------
# Agent interface
# ---------------------------------------------------------------------------


def test_agent_tags_issue_in_emerging_pair():
    issues = _trend_issues()
    generator = _generator(*issues)
    newest = max(issues, key=lambda i: i.submitted_at)

    result = run_async(
        generator._run(
            AgentRequest(issue=newest, context={"classifier": {"domain": "Waste Management"}})
        )
    )

    assert result.emerging is True
    assert result.area == "Kothrud"
    assert "emerging" in result.reasoning


def test_agent_skips_unclassified_issue():
    issue = Issue(city_id="pune", text="Something", submitted_at=NOW)
    result = run_async(_generator(issue)._run(AgentRequest(issue=issue)))
    assert result.domain == "unclassified"
    assert result.emerging is False
    assert result.confidence == 0.5
