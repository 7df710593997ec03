"""Domain models for the paperdesk conference workflow.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage and the REST API.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, Enum):
    AUTHOR = "Author"
    REVIEWER = "Reviewer"
    EDITOR = "Editor"
    ADMIN = "Admin"


class SubmissionStatus(str, Enum):
    """Submission lifecycle states."""

    SUBMITTED = "Submitted"
    EDITOR_ASSIGNED = "Editor Assigned"
    UNDER_REVIEW = "Under Review"
    REVIEW_RECEIVED = "Review Received"
    REVISION_REQUIRED = "Revision Required"
    REVISED_SUBMITTED = "Revised Submitted"
    CONDITIONALLY_ACCEPT = "Conditionally Accept"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    PUBLISHED = "Published"


class Recommendation(str, Enum):
    """Reviewer recommendations; also the vocabulary of editor decisions."""

    ACCEPT = "Accept"
    CONDITIONALLY_ACCEPT = "Conditionally Accept"
    REVISE_AND_RESUBMIT = "Revise & Resubmit"
    REJECT = "Reject"


class AssignmentStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"
    SUBMITTED = "Submitted"


class RevisionStatus(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    RESUBMITTED = "Resubmitted"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


class AcceptanceStatus(str, Enum):
    ACCEPTED = "Accepted"
    CERTIFICATE_GENERATED = "Certificate Generated"
    PUBLISHED = "Published"


class RejectionReason(str, Enum):
    QUALITY_ISSUES = "Quality Issues"
    OUT_OF_SCOPE = "Out of Scope"
    INSUFFICIENT_NOVELTY = "Insufficient Novelty"
    PLAGIARISM = "Plagiarism"
    METHODOLOGICAL_FLAWS = "Methodological Flaws"
    INADEQUATE_LITERATURE_REVIEW = "Inadequate Literature Review"
    POOR_PRESENTATION = "Poor Presentation"
    ETHICAL_CONCERNS = "Ethical Concerns"
    INCOMPLETE_WORK = "Incomplete Work"
    OTHER = "Other"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"


class CopyrightStatus(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class Thread(str, Enum):
    """Message threads kept per paper, all of them with the handling editor."""

    AUTHOR = "author"
    REVIEWER = "reviewer"


class AuditAction(str, Enum):
    """Actions tracked in the append-only audit log."""

    USER_REGISTERED = "user_registered"
    STAFF_CREATED = "staff_created"
    PAPER_SUBMITTED = "paper_submitted"
    SUBMISSION_EDITED = "submission_edited"
    PDF_REPLACED = "pdf_replaced"
    STATUS_CHANGED = "status_changed"
    EDITOR_REASSIGNED = "editor_reassigned"
    REVIEWERS_ASSIGNED = "reviewers_assigned"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_DECLINED = "assignment_declined"
    REVIEWER_REMOVED = "reviewer_removed"
    REVIEWER_REMINDED = "reviewer_reminded"
    REVIEW_SUBMITTED = "review_submitted"
    REVISION_SUBMITTED = "revision_submitted"
    DECISION_MADE = "decision_made"
    REGISTRATION_CREATED = "registration_created"
    REGISTRATION_PAID = "registration_paid"
    COPYRIGHT_UPLOADED = "copyright_uploaded"
    COPYRIGHT_REVIEWED = "copyright_reviewed"
    CERTIFICATE_ISSUED = "certificate_issued"
    MESSAGE_SENT = "message_sent"


# Editor decision implied by each status; statuses without a decision map to None.
_DECISION_BY_STATUS: dict[SubmissionStatus, Recommendation] = {
    SubmissionStatus.REVISION_REQUIRED: Recommendation.REVISE_AND_RESUBMIT,
    SubmissionStatus.CONDITIONALLY_ACCEPT: Recommendation.CONDITIONALLY_ACCEPT,
    SubmissionStatus.ACCEPTED: Recommendation.ACCEPT,
    SubmissionStatus.PUBLISHED: Recommendation.ACCEPT,
    SubmissionStatus.REJECTED: Recommendation.REJECT,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def average_rating(ratings: list[float | int | None]) -> float:
    """Mean of the present ratings, rounded to two places; 0 when none are present."""
    present = [r for r in ratings if r is not None]
    if not present:
        return 0.0
    return round(sum(present) / len(present), 2)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class User(BaseModel):
    user_id: str = Field(default_factory=_uuid)
    username: str
    email: str
    role: Role = Role.AUTHOR
    created_at: datetime = Field(default_factory=_now)


class UserCreate(BaseModel):
    """Payload for self-registration or staff creation."""

    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=6, max_length=256)
    username: str | None = Field(default=None, max_length=120)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class StoredFile(BaseModel):
    """A file held by the object store: public URL plus opaque ID."""

    url: str
    file_id: str
    filename: str = ""


class PdfVersion(BaseModel):
    version: int
    pdf: StoredFile
    submitted_at: datetime = Field(default_factory=_now)


class ReviewAssignment(BaseModel):
    """An editor's invitation to a reviewer for one submission."""

    submission_id: str
    reviewer_id: str
    deadline: datetime
    status: AssignmentStatus = AssignmentStatus.PENDING
    assigned_at: datetime = Field(default_factory=_now)
    responded_at: datetime | None = None
    decline_reason: str = ""
    reminder_count: int = 0
    last_reminder_at: datetime | None = None

    def is_overdue(self, now: datetime | None = None) -> bool:
        """Display label only; never advances any state."""
        if self.status not in (AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED):
            return False
        return (now or _now()) > self.deadline

    @property
    def display_status(self) -> str:
        return "Overdue" if self.is_overdue() else self.status.value


class Submission(BaseModel):
    """An author's paper entry tracked through review to a final outcome."""

    submission_id: str
    title: str
    author_id: str
    author_name: str
    author_email: str
    category: str
    topic: str = ""
    abstract: str = ""
    pdf: StoredFile | None = None
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    assigned_editor_id: str | None = None
    assignments: list[ReviewAssignment] = Field(default_factory=list)
    revision_count: int = 0
    editor_comments: str = ""
    editor_corrections: str = ""
    versions: list[PdfVersion] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def final_decision(self) -> Recommendation | None:
        """Derived from status so the two can never disagree."""
        return _DECISION_BY_STATUS.get(self.status)

    @property
    def review_round(self) -> int:
        return self.revision_count + 1

    def assignment_for(self, reviewer_id: str) -> ReviewAssignment | None:
        for assignment in self.assignments:
            if assignment.reviewer_id == reviewer_id:
                return assignment
        return None

    def to_public(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["final_decision"] = self.final_decision.value if self.final_decision else None
        data["review_round"] = self.review_round
        for raw, assignment in zip(data["assignments"], self.assignments):
            raw["display_status"] = assignment.display_status
        return data


def _check_category(value: str | None) -> str | None:
    # The submission ID prefix comes from the first word.
    if value is not None and len(value.strip()) < 2:
        raise ValueError("category must contain at least 2 non-blank characters")
    return value


class SubmissionCreate(BaseModel):
    """Payload for submitting a new paper."""

    title: str = Field(min_length=1, max_length=500)
    author_name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=2, max_length=200)
    topic: str = Field(default="", max_length=200)
    abstract: str = Field(default="", max_length=20_000)

    @field_validator("category")
    @classmethod
    def category_not_blank(cls, value):
        return _check_category(value)


class SubmissionUpdate(BaseModel):
    """Author edits allowed before review starts; omitted fields are kept."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    author_name: str | None = Field(default=None, min_length=1, max_length=200)
    category: str | None = Field(default=None, min_length=2, max_length=200)
    topic: str | None = Field(default=None, max_length=200)
    abstract: str | None = Field(default=None, max_length=20_000)

    @field_validator("category")
    @classmethod
    def category_not_blank(cls, value):
        return _check_category(value)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

class Review(BaseModel):
    """One reviewer's report on one submission; replaced on resubmission."""

    review_id: str = Field(default_factory=_uuid)
    submission_id: str
    reviewer_id: str
    review_round: int = 1
    overall_rating: int = Field(ge=1, le=5)
    novelty_rating: int | None = Field(default=None, ge=1, le=5)
    quality_rating: int | None = Field(default=None, ge=1, le=5)
    clarity_rating: int | None = Field(default=None, ge=1, le=5)
    recommendation: Recommendation
    comments: str
    strengths: str = ""
    weaknesses: str = ""
    comments_to_author: str = ""
    confidential_comments: str = ""  # Visible to the editor only
    status: AssignmentStatus = AssignmentStatus.SUBMITTED
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ReviewSubmission(BaseModel):
    """Payload for submitting (or resubmitting) a review."""

    overall_rating: int = Field(ge=1, le=5)
    novelty_rating: int | None = Field(default=None, ge=1, le=5)
    quality_rating: int | None = Field(default=None, ge=1, le=5)
    clarity_rating: int | None = Field(default=None, ge=1, le=5)
    recommendation: Recommendation
    comments: str = Field(min_length=1, max_length=40_000)
    strengths: str = Field(default="", max_length=20_000)
    weaknesses: str = Field(default="", max_length=20_000)
    comments_to_author: str = Field(default="", max_length=20_000)
    confidential_comments: str = Field(default="", max_length=20_000)


# ---------------------------------------------------------------------------
# Revision
# ---------------------------------------------------------------------------

class ReviewerComment(BaseModel):
    """Snapshot of one review taken when a revision is requested."""

    reviewer_id: str
    reviewer_name: str = ""
    reviewer_email: str = ""
    review_round: int = 1
    comments: str = ""
    comments_to_author: str = ""
    confidential_comments: str = ""
    strengths: str = ""
    weaknesses: str = ""
    overall_rating: int | None = None
    novelty_rating: int | None = None
    quality_rating: int | None = None
    clarity_rating: int | None = None
    recommendation: str = ""

    def for_author(self, label: str) -> dict[str, Any]:
        """Anonymous copy for the author: no identity, no editor-only notes."""
        return {
            "reviewer": label,
            "review_round": self.review_round,
            "comments": self.comments_to_author or self.comments,
            "strengths": self.strengths,
            "weaknesses": self.weaknesses,
            "overall_rating": self.overall_rating,
            "recommendation": self.recommendation,
        }


class Revision(BaseModel):
    """The single active revision context of a submission."""

    submission_id: str
    revision_round: int = 1
    revision_status: RevisionStatus = RevisionStatus.PENDING
    revision_message: str = ""
    deadline: datetime
    editor_id: str = ""
    reviewer_comments: list[ReviewerComment] = Field(default_factory=list)
    revised_pdf: StoredFile | None = None
    author_response: str = ""
    requested_at: datetime = Field(default_factory=_now)
    resubmitted_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_now)

    def author_view(self) -> dict[str, Any]:
        """The revision as its author sees it.

        Reviewers are numbered per paper in order of first appearance, so the
        same reviewer keeps the same label across rounds.
        """
        data = self.model_dump(mode="json", exclude={"reviewer_comments", "editor_id"})
        labels: dict[str, str] = {}
        comments = []
        for comment in self.reviewer_comments:
            label = labels.setdefault(comment.reviewer_id, f"Reviewer {len(labels) + 1}")
            comments.append(comment.for_author(label))
        data["reviewer_comments"] = comments
        return data


# ---------------------------------------------------------------------------
# Terminal snapshots
# ---------------------------------------------------------------------------

class ReviewerSummary(BaseModel):
    reviewer_id: str
    reviewer_name: str = ""
    reviewer_email: str = ""
    overall_rating: int | None = None
    recommendation: str = ""
    review_round: int = 1
    submitted_at: datetime | None = None


class _DecisionSnapshot(BaseModel):
    """Fields shared by the accepted and rejected snapshots."""

    submission_id: str
    title: str
    author_name: str
    author_email: str
    category: str
    topic: str = ""
    pdf: StoredFile | None = None
    reviewers: list[ReviewerSummary] = Field(default_factory=list)
    total_reviewers: int = 0
    average_rating: float = 0.0
    editor_id: str = ""
    revision_count: int = 0
    conference_name: str = ""
    conference_year: int = 0
    original_submission_date: datetime | None = None
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _aggregate_ratings(self) -> "_DecisionSnapshot":
        self.refresh_aggregates()
        return self

    def refresh_aggregates(self) -> None:
        """Recompute reviewer count and average rating; call before every save."""
        self.total_reviewers = len(self.reviewers)
        self.average_rating = average_rating([r.overall_rating for r in self.reviewers])


class FinalAcceptance(_DecisionSnapshot):
    certificate_number: str = ""
    acceptance_status: AcceptanceStatus = AcceptanceStatus.ACCEPTED
    accepted_at: datetime = Field(default_factory=_now)
    notes: str = ""


class ReviewRound(BaseModel):
    round: int
    reviews: list[ReviewerComment] = Field(default_factory=list)


class RejectedPaper(_DecisionSnapshot):
    rejection_reason: RejectionReason = RejectionReason.QUALITY_ISSUES
    rejection_comments: str
    reviews_by_round: list[ReviewRound] = Field(default_factory=list)
    rejected_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Post-acceptance
# ---------------------------------------------------------------------------

class Registration(BaseModel):
    submission_id: str
    registration_number: str
    author_email: str
    payment_status: PaymentStatus = PaymentStatus.PENDING
    registered_at: datetime = Field(default_factory=_now)
    paid_at: datetime | None = None


class CopyrightMessage(BaseModel):
    sender: str  # "Author" | "Admin"
    sender_id: str = ""
    message: str
    timestamp: datetime = Field(default_factory=_now)


class Copyright(BaseModel):
    copyright_id: str = Field(default_factory=_uuid)
    submission_id: str
    author_email: str
    author_name: str
    title: str
    form: StoredFile | None = None
    status: CopyrightStatus = CopyrightStatus.PENDING
    submitted_at: datetime | None = None
    messages: list[CopyrightMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Editor threads
# ---------------------------------------------------------------------------

class PaperMessage(BaseModel):
    message_id: str = Field(default_factory=_uuid)
    submission_id: str
    thread: Thread
    reviewer_id: str = ""  # set on reviewer threads
    sender_id: str
    sender_role: Role
    sender_name: str = ""
    body: str = Field(min_length=1, max_length=10_000)
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Audit Event (Immutable Event Log)
# ---------------------------------------------------------------------------

class AuditEvent(BaseModel):
    """Append-only event for the system audit trail."""

    event_id: str = Field(default_factory=_uuid)
    action: AuditAction
    actor_id: str = ""  # user_id or "system"
    target_id: str = ""  # submission_id, user_id, ...
    target_type: str = ""  # "submission", "user", ...
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
