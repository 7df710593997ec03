"""Decision service — the editor's binding outcome for a reviewed paper.

Accept, conditionally accept, request revision and reject all route through
the lifecycle table.  Accept and reject freeze a snapshot of the paper and
its reviews (FinalAcceptance / RejectedPaper) in the same transaction as the
status change.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite

from paperdesk.acceptance_service import certificate_number, save_acceptance
from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.config import Config
from paperdesk.database import from_json, to_json
from paperdesk.errors import NotFound, ValidationFailed
from paperdesk.lifecycle import Event, transition
from paperdesk.models import (
    AuditAction,
    FinalAcceptance,
    Recommendation,
    RejectedPaper,
    RejectionReason,
    Review,
    ReviewerComment,
    ReviewerSummary,
    ReviewRound,
    Revision,
    RevisionStatus,
    Submission,
    User,
)
from paperdesk.notifications import Notifier
from paperdesk.review_service import get_reviews_for_submission
from paperdesk.submission_service import (
    apply_event,
    ensure_handling_editor,
    get_revision,
    get_submission,
    notify_transition,
    resolve_deadline,
    save_revision,
    save_submission,
)
from paperdesk.user_service import get_users

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _comment_from_review(review: Review, person: User | None) -> ReviewerComment:
    return ReviewerComment(
        reviewer_id=review.reviewer_id,
        reviewer_name=person.username if person else "",
        reviewer_email=person.email if person else "",
        review_round=review.review_round,
        comments=review.comments,
        comments_to_author=review.comments_to_author,
        confidential_comments=review.confidential_comments,
        strengths=review.strengths,
        weaknesses=review.weaknesses,
        overall_rating=review.overall_rating,
        novelty_rating=review.novelty_rating,
        quality_rating=review.quality_rating,
        clarity_rating=review.clarity_rating,
        recommendation=review.recommendation.value,
    )


def _summary_from_review(review: Review, person: User | None) -> ReviewerSummary:
    return ReviewerSummary(
        reviewer_id=review.reviewer_id,
        reviewer_name=person.username if person else "",
        reviewer_email=person.email if person else "",
        overall_rating=review.overall_rating,
        recommendation=review.recommendation.value,
        review_round=review.review_round,
        submitted_at=review.updated_at,
    )


async def _reviews_with_people(
    db: aiosqlite.Connection,
    submission_id: str,
) -> tuple[list[Review], dict[str, User]]:
    reviews = await get_reviews_for_submission(db, submission_id)
    people = await get_users(db, (r.reviewer_id for r in reviews))
    return reviews, people


def group_by_round(comments: Iterable[ReviewerComment]) -> list[ReviewRound]:
    """Group review comments by round, one entry per reviewer per round."""
    rounds: dict[int, dict[str, ReviewerComment]] = defaultdict(dict)
    for comment in comments:
        rounds[comment.review_round][comment.reviewer_id] = comment
    return [
        ReviewRound(round=number, reviews=list(rounds[number].values()))
        for number in sorted(rounds)
    ]


def _snapshot_base(paper: Submission, config: Config, editor_id: str, summaries: list[ReviewerSummary]) -> dict[str, Any]:
    return {
        "submission_id": paper.submission_id,
        "title": paper.title,
        "author_name": paper.author_name,
        "author_email": paper.author_email,
        "category": paper.category,
        "topic": paper.topic,
        "pdf": paper.pdf,
        "reviewers": summaries,
        "editor_id": editor_id,
        "revision_count": paper.revision_count,
        "conference_name": config.workflow.conference_name,
        "conference_year": config.workflow.conference_year,
        "original_submission_date": paper.created_at,
    }


async def _close_revision(db: aiosqlite.Connection, submission_id: str, status: RevisionStatus) -> Revision | None:
    revision = await get_revision(db, submission_id)
    if revision is not None:
        revision.revision_status = status
        await save_revision(db, revision)
    return revision


async def _record_decision(
    db: aiosqlite.Connection,
    actor: AuthContext,
    paper: Submission,
    decision: Recommendation,
    **details: Any,
) -> None:
    await log_event(
        db,
        AuditAction.DECISION_MADE,
        actor_id=actor.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"decision": decision.value, **details},
    )


# ---------------------------------------------------------------------------
# Request revision
# ---------------------------------------------------------------------------

async def request_revision(
    db: aiosqlite.Connection,
    notifier: Notifier,
    config: Config,
    actor: AuthContext,
    submission_id: str,
    *,
    message: str = "",
    deadline: str | date | datetime | None = None,
    deadline_days: int | None = None,
) -> Revision:
    """Send the paper back to its author with a snapshot of the reviews.

    The first request creates the revision record; later requests advance its
    round and add the new snapshot to the earlier ones.
    """
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    transition(paper.status, Event.REQUEST_REVISION)

    reviews, people = await _reviews_with_people(db, submission_id)
    required = config.workflow.min_reviews_for_revision
    if len(reviews) < required:
        raise ValidationFailed(
            f"At least {required} reviews are required before requesting a revision "
            f"({len(reviews)} submitted)"
        )
    due = resolve_deadline(deadline, deadline_days, config.workflow.revision_deadline_days)
    snapshot = [_comment_from_review(r, people.get(r.reviewer_id)) for r in reviews]

    now = datetime.now(timezone.utc)
    revision = await get_revision(db, submission_id)
    if revision is None:
        revision = Revision(
            submission_id=submission_id,
            revision_round=1,
            revision_message=message.strip(),
            deadline=due,
            editor_id=actor.user_id,
            reviewer_comments=snapshot,
            requested_at=now,
        )
    else:
        revision.revision_round += 1
        revision.revision_status = RevisionStatus.PENDING
        revision.revision_message = message.strip()
        revision.deadline = due
        revision.editor_id = actor.user_id
        revision.reviewer_comments = revision.reviewer_comments + snapshot
        revision.author_response = ""
        revision.requested_at = now

    step = await apply_event(db, paper, Event.REQUEST_REVISION, actor.user_id)
    paper.editor_comments = message.strip()
    await save_revision(db, revision)
    await save_submission(db, paper)
    await _record_decision(
        db, actor, paper, Recommendation.REVISE_AND_RESUBMIT, revision_round=revision.revision_round
    )
    await db.commit()
    logger.info("revision round %d requested for %s", revision.revision_round, submission_id)

    await notify_transition(
        db, notifier, paper, step, reviewer_ids=[], message=revision.revision_message, deadline=due
    )
    return revision


# ---------------------------------------------------------------------------
# Conditional accept
# ---------------------------------------------------------------------------

async def conditionally_accept(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    submission_id: str,
    *,
    comments: str = "",
    corrections: str = "",
) -> Submission:
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)

    step = await apply_event(db, paper, Event.CONDITIONALLY_ACCEPT, actor.user_id)
    paper.editor_comments = comments.strip()
    paper.editor_corrections = corrections.strip()
    await save_submission(db, paper)
    await _record_decision(db, actor, paper, Recommendation.CONDITIONALLY_ACCEPT)
    await db.commit()

    await notify_transition(db, notifier, paper, step, reviewer_ids=[], comments=paper.editor_comments)
    return paper


# ---------------------------------------------------------------------------
# Accept
# ---------------------------------------------------------------------------

async def accept_paper(
    db: aiosqlite.Connection,
    notifier: Notifier,
    config: Config,
    actor: AuthContext,
    submission_id: str,
    *,
    notes: str = "",
) -> FinalAcceptance:
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    transition(paper.status, Event.ACCEPT)

    reviews, people = await _reviews_with_people(db, submission_id)
    summaries = [_summary_from_review(r, people.get(r.reviewer_id)) for r in reviews]
    record = FinalAcceptance(
        **_snapshot_base(paper, config, actor.user_id, summaries),
        certificate_number=certificate_number(
            config.workflow.conference_name, config.workflow.conference_year
        ),
        notes=notes.strip() or f"Paper accepted by {actor.username or actor.email}",
    )

    step = await apply_event(db, paper, Event.ACCEPT, actor.user_id)
    await save_acceptance(db, record)
    await _close_revision(db, submission_id, RevisionStatus.ACCEPTED)
    await save_submission(db, paper)
    await _record_decision(
        db, actor, paper, Recommendation.ACCEPT, average_rating=record.average_rating
    )
    await db.commit()
    logger.info("paper %s accepted (avg %.2f)", submission_id, record.average_rating)

    await notify_transition(
        db, notifier, paper, step, reviewer_ids=[], certificate_number=record.certificate_number
    )
    return record


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------

def _row_to_rejected(row: aiosqlite.Row | dict[str, Any]) -> RejectedPaper:
    return RejectedPaper.model_validate(from_json(dict(row)["data"]))


async def save_rejected(db: aiosqlite.Connection, record: RejectedPaper) -> None:
    record.refresh_aggregates()
    record.updated_at = datetime.now(timezone.utc)
    await db.execute(
        """
        INSERT INTO rejected_papers (submission_id, data, category, rejection_reason, rejected_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(submission_id) DO UPDATE SET
            data = excluded.data,
            rejection_reason = excluded.rejection_reason
        """,
        (
            record.submission_id,
            to_json(record),
            record.category,
            record.rejection_reason.value,
            record.rejected_at.isoformat(),
        ),
    )


async def reject_paper(
    db: aiosqlite.Connection,
    notifier: Notifier,
    config: Config,
    actor: AuthContext,
    submission_id: str,
    *,
    reason: RejectionReason,
    comments: str,
) -> RejectedPaper:
    """Reject with a reason and comments; every round's reviews go into the snapshot."""
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    transition(paper.status, Event.REJECT)
    if not comments or not comments.strip():
        raise ValidationFailed("Rejection comments are required")

    reviews, people = await _reviews_with_people(db, submission_id)
    summaries = [_summary_from_review(r, people.get(r.reviewer_id)) for r in reviews]
    revision = await get_revision(db, submission_id)
    history = list(revision.reviewer_comments) if revision else []
    history += [_comment_from_review(r, people.get(r.reviewer_id)) for r in reviews]

    record = RejectedPaper(
        **_snapshot_base(paper, config, actor.user_id, summaries),
        rejection_reason=reason,
        rejection_comments=comments.strip(),
        reviews_by_round=group_by_round(history),
    )

    step = await apply_event(db, paper, Event.REJECT, actor.user_id, reason=reason.value)
    paper.editor_comments = record.rejection_comments
    await save_rejected(db, record)
    await _close_revision(db, submission_id, RevisionStatus.REJECTED)
    await save_submission(db, paper)
    await _record_decision(db, actor, paper, Recommendation.REJECT, reason=reason.value)
    await db.commit()
    logger.info("paper %s rejected (%s)", submission_id, reason.value)

    await notify_transition(
        db, notifier, paper, step, reviewer_ids=[], reason=reason.value, comments=record.rejection_comments
    )
    return record


async def get_rejected(db: aiosqlite.Connection, submission_id: str) -> RejectedPaper:
    async with db.execute(
        "SELECT data FROM rejected_papers WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFound("Rejected paper not found")
    return _row_to_rejected(row)


async def list_rejected(db: aiosqlite.Connection, reason: RejectionReason | None = None) -> list[RejectedPaper]:
    if reason:
        query = "SELECT data FROM rejected_papers WHERE rejection_reason = ? ORDER BY rejected_at DESC"
        params: tuple = (reason.value,)
    else:
        query = "SELECT data FROM rejected_papers ORDER BY rejected_at DESC"
        params = ()
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_rejected(row) for row in rows]


async def rejection_statistics(db: aiosqlite.Connection) -> dict[str, int]:
    async with db.execute(
        "SELECT rejection_reason, COUNT(*) FROM rejected_papers GROUP BY rejection_reason"
    ) as cursor:
        rows = await cursor.fetchall()
    counts = {row[0]: row[1] for row in rows}
    return {reason.value: counts.get(reason.value, 0) for reason in RejectionReason}


# ---------------------------------------------------------------------------
# Generic decision
# ---------------------------------------------------------------------------

async def make_decision(
    db: aiosqlite.Connection,
    notifier: Notifier,
    config: Config,
    actor: AuthContext,
    submission_id: str,
    decision: Recommendation,
    *,
    comments: str = "",
    corrections: str = "",
    reason: RejectionReason | None = None,
    deadline: str | date | datetime | None = None,
    deadline_days: int | None = None,
) -> Any:
    """Dispatch a decision value to the matching operation."""
    if decision == Recommendation.ACCEPT:
        return await accept_paper(db, notifier, config, actor, submission_id, notes=comments)
    if decision == Recommendation.CONDITIONALLY_ACCEPT:
        return await conditionally_accept(
            db, notifier, actor, submission_id, comments=comments, corrections=corrections
        )
    if decision == Recommendation.REVISE_AND_RESUBMIT:
        return await request_revision(
            db, notifier, config, actor, submission_id,
            message=comments, deadline=deadline, deadline_days=deadline_days,
        )
    return await reject_paper(
        db, notifier, config, actor, submission_id,
        reason=reason or RejectionReason.OTHER,
        comments=comments,
    )
