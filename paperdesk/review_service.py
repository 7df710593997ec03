"""Review service — create-or-replace reviews keyed on (submission, reviewer)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.errors import Forbidden, ValidationFailed
from paperdesk.models import (
    AssignmentStatus,
    AuditAction,
    Recommendation,
    Review,
    ReviewSubmission,
    SubmissionStatus,
)
from paperdesk.notifications import Notifier
from paperdesk.submission_service import (
    ensure_handling_editor,
    get_submission,
    maybe_complete_round,
    notify_transition,
    save_assignment,
    save_submission,
)
from paperdesk.user_service import get_users

logger = logging.getLogger(__name__)

# Reviews stay editable after the round closes; the round event fires once.
_REVIEWABLE = (
    SubmissionStatus.UNDER_REVIEW,
    SubmissionStatus.REVISED_SUBMITTED,
    SubmissionStatus.REVIEW_RECEIVED,
)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_review(row: aiosqlite.Row | dict[str, Any]) -> Review:
    d = dict(row)
    d["recommendation"] = Recommendation(d["recommendation"])
    return Review(**d)


async def get_review(
    db: aiosqlite.Connection,
    submission_id: str,
    reviewer_id: str,
) -> Review | None:
    async with db.execute(
        "SELECT * FROM reviews WHERE submission_id = ? AND reviewer_id = ?",
        (submission_id, reviewer_id),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_review(row) if row else None


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

async def upsert_review(
    db: aiosqlite.Connection,
    notifier: Notifier,
    reviewer: AuthContext,
    submission_id: str,
    payload: ReviewSubmission,
) -> tuple[Review, bool]:
    """Store the caller's review of a submission, replacing any earlier one.

    Returns ``(review, created)``.  Last writer wins.  When this review
    completes the round the submission advances to Review Received.
    """
    paper = await get_submission(db, submission_id)
    assignment = paper.assignment_for(reviewer.user_id)
    if assignment is None:
        raise Forbidden("Access denied: you are not assigned to review this paper")
    if assignment.status not in (AssignmentStatus.ACCEPTED, AssignmentStatus.SUBMITTED):
        raise Forbidden("You must accept the review assignment before submitting a review")
    if paper.status not in _REVIEWABLE:
        raise ValidationFailed(f"Paper is not open for review (status '{paper.status.value}')")

    existing = await get_review(db, submission_id, reviewer.user_id)
    now = datetime.now(timezone.utc)
    review = Review(
        review_id=existing.review_id if existing else str(uuid.uuid4()),
        submission_id=submission_id,
        reviewer_id=reviewer.user_id,
        review_round=paper.review_round,
        created_at=existing.created_at if existing else now,
        updated_at=now,
        status=AssignmentStatus.SUBMITTED,
        **payload.model_dump(),
    )
    await db.execute(
        """
        INSERT INTO reviews (
            review_id, submission_id, reviewer_id, review_round,
            overall_rating, novelty_rating, quality_rating, clarity_rating,
            recommendation, comments, strengths, weaknesses,
            comments_to_author, confidential_comments, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(submission_id, reviewer_id) DO UPDATE SET
            review_round = excluded.review_round,
            overall_rating = excluded.overall_rating,
            novelty_rating = excluded.novelty_rating,
            quality_rating = excluded.quality_rating,
            clarity_rating = excluded.clarity_rating,
            recommendation = excluded.recommendation,
            comments = excluded.comments,
            strengths = excluded.strengths,
            weaknesses = excluded.weaknesses,
            comments_to_author = excluded.comments_to_author,
            confidential_comments = excluded.confidential_comments,
            status = excluded.status,
            updated_at = excluded.updated_at
        """,
        (
            review.review_id,
            review.submission_id,
            review.reviewer_id,
            review.review_round,
            review.overall_rating,
            review.novelty_rating,
            review.quality_rating,
            review.clarity_rating,
            review.recommendation.value,
            review.comments,
            review.strengths,
            review.weaknesses,
            review.comments_to_author,
            review.confidential_comments,
            review.status.value,
            review.created_at.isoformat(),
            review.updated_at.isoformat(),
        ),
    )

    assignment.status = AssignmentStatus.SUBMITTED
    await save_assignment(db, assignment)
    await log_event(
        db,
        AuditAction.REVIEW_SUBMITTED,
        actor_id=reviewer.user_id,
        target_id=submission_id,
        target_type="submission",
        details={
            "review_round": review.review_round,
            "recommendation": review.recommendation.value,
            "overall_rating": review.overall_rating,
            "replaced": existing is not None,
        },
    )
    step = await maybe_complete_round(db, paper, reviewer.user_id)
    await save_submission(db, paper)
    await db.commit()
    logger.info(
        "review %s for %s by %s (round %d)",
        "updated" if existing else "created",
        submission_id,
        reviewer.email,
        review.review_round,
    )

    editor = await get_users(db, [paper.assigned_editor_id or ""])
    editor_user = editor.get(paper.assigned_editor_id or "")
    notifier.send(
        "review_submitted",
        editor_user.email if editor_user else None,
        paper=paper,
        reviewer=reviewer.email,
        rating=review.overall_rating,
        recommendation=review.recommendation.value,
    )
    await notify_transition(db, notifier, paper, step)
    return review, existing is None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_reviews_for_submission(
    db: aiosqlite.Connection,
    submission_id: str,
    review_round: int | None = None,
) -> list[Review]:
    if review_round is None:
        query = "SELECT * FROM reviews WHERE submission_id = ? ORDER BY created_at ASC"
        params: tuple = (submission_id,)
    else:
        query = (
            "SELECT * FROM reviews WHERE submission_id = ? AND review_round = ? "
            "ORDER BY created_at ASC"
        )
        params = (submission_id, review_round)
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_review(row) for row in rows]


async def get_reviews_by_reviewer(db: aiosqlite.Connection, reviewer_id: str) -> list[Review]:
    async with db.execute(
        "SELECT * FROM reviews WHERE reviewer_id = ? ORDER BY updated_at DESC",
        (reviewer_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_review(row) for row in rows]


async def list_reviews_for_editor(
    db: aiosqlite.Connection,
    actor: AuthContext,
    submission_id: str,
) -> list[dict[str, Any]]:
    """Reviews of a paper with reviewer identity, for its editor."""
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    reviews = await get_reviews_for_submission(db, submission_id)
    people = await get_users(db, (r.reviewer_id for r in reviews))
    out: list[dict[str, Any]] = []
    for review in reviews:
        item = review.model_dump(mode="json")
        person = people.get(review.reviewer_id)
        item["reviewer_name"] = person.username if person else ""
        item["reviewer_email"] = person.email if person else ""
        item["current_round"] = review.review_round == paper.review_round
        out.append(item)
    return out
