"""Issue models for the civic workflow orchestrator.

This module defines the data handed over by the intake collaborator and
the Issue record the orchestrator owns afterwards:
- IssueSubmission: validated raw complaint from intake
- GeoLocation: optional coordinates plus a named area
- IssueStatus: lifecycle status of an issue
- Issue: the complaint under processing with accumulated agent results
- SubmissionReceipt: acknowledgment returned to intake

The models use Pydantic for validation, consistent with the state,
audit and agent result models.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.civicflow.agents.models import Classification, PriorityScore, SimilarityResult


def new_issue_id() -> str:
    return str(uuid.uuid4())


class IssueStatus(str, Enum):
    """Lifecycle status of an issue.

    Attributes:
        RECEIVED: Accepted at intake, not yet processed.
        NEEDS_MORE_DETAIL: Accepted, but the citizen was prompted for more input.
        PROCESSING: Agent workflow is running.
        PENDING_REVIEW: Processed with at least one low-confidence decision.
        PENDING_INTERVENTION: Workflow escalated; waiting for an operator.
        PROCESSED: All agent steps accepted.
        FAILED: Workflow failed on a non-retryable error.
        RESOLVED: Marked resolved by the city.
        CLOSED: Closed (e.g. merged as a duplicate or withdrawn).
    """

    RECEIVED = "received"
    NEEDS_MORE_DETAIL = "needs_more_detail"
    PROCESSING = "processing"
    PENDING_REVIEW = "pending_review"
    PENDING_INTERVENTION = "pending_intervention"
    PROCESSED = "processed"
    FAILED = "failed"
    RESOLVED = "resolved"
    CLOSED = "closed"


class GeoLocation(BaseModel):
    """Point location of a complaint, optionally tagged with an area name."""

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    area: Optional[str] = Field(
        default=None,
        description="Ward, neighbourhood or zone name used for area insights",
    )


class IssueSubmission(BaseModel):
    """Raw complaint received from the intake collaborator.

    Intake has already validated the transport shape; content completeness
    is judged by the orchestrator, which never rejects a submission.
    """

    city_id: str = Field(..., min_length=1)
    text: str = Field(default="", description="Complaint text (may be empty)")
    language: str = Field(default="en", min_length=2)
    location: Optional[GeoLocation] = None
    citizen_ref: Optional[str] = Field(
        default=None,
        description="Citizen reference; None for anonymous submissions",
    )
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class Issue(BaseModel):
    """A citizen complaint under processing.

    Owned by the orchestrator once handed off. The status field changes only
    through orchestrator-approved updates, each recorded in the audit trail.

    Attributes:
        issue_id: Tracking identifier generated at intake.
        city_id: City the issue belongs to; scopes every storage call.
        text: Raw complaint text.
        language: Detected language tag.
        location: Optional geolocation.
        submitted_at: Submission time (UTC).
        citizen_ref: Optional citizen reference (None for anonymous).
        status: Current lifecycle status.
        workflow_id: Workflow processing this issue.
        classification: Classifier output, once available.
        priority: Priority scorer output, once available.
        similar_issues: Duplicate detector output, once available.
        duplicate_of: Primary issue id when this issue is a duplicate.
        affected_count: Number of reports this issue stands for (itself included).
        needs_review: True when any decision was flagged for manual review.
        review_reasons: Why the issue was flagged.
        missing_details: Prompts sent back to the citizen.
    """

    issue_id: str = Field(default_factory=new_issue_id, min_length=1)
    city_id: str = Field(..., min_length=1)
    text: str = ""
    language: str = "en"
    location: Optional[GeoLocation] = None
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    citizen_ref: Optional[str] = None
    status: IssueStatus = IssueStatus.RECEIVED
    workflow_id: Optional[str] = None
    classification: Optional[Classification] = None
    priority: Optional[PriorityScore] = None
    similar_issues: List[SimilarityResult] = Field(default_factory=list)
    duplicate_of: Optional[str] = None
    affected_count: int = Field(default=1, ge=1)
    needs_review: bool = False
    review_reasons: List[str] = Field(default_factory=list)
    missing_details: List[str] = Field(default_factory=list)
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_submission(cls, submission: IssueSubmission) -> "Issue":
        return cls(
            city_id=submission.city_id,
            text=submission.text,
            language=submission.language,
            location=submission.location,
            submitted_at=submission.submitted_at,
            citizen_ref=submission.citizen_ref,
        )

    @property
    def area(self) -> Optional[str]:
        return self.location.area if self.location else None

    def to_payload(self) -> Dict[str, Any]:
        """Serialize the issue for agent requests and audit payloads."""
        return self.model_dump(mode="json")


class SubmissionReceipt(BaseModel):
    """Acknowledgment returned to intake before processing completes."""

    tracking_id: str
    workflow_id: str
    status: IssueStatus
    prompts: List[str] = Field(default_factory=list)
