"""Reminder service — reviewers who have not reported yet, and nudging them.

Deadlines are informational: a reminder only sends mail and counts itself on
the assignment.  Nothing here changes a submission's status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.errors import NotFound, PaperdeskError, ValidationFailed
from paperdesk.models import AuditAction, ReviewAssignment, Role, Submission, SubmissionStatus
from paperdesk.notifications import Notifier
from paperdesk.submission_service import (
    active_assignments,
    ensure_handling_editor,
    get_submission,
    list_submissions,
    reviewed_this_round,
    save_assignment,
)
from paperdesk.user_service import get_user, get_users

logger = logging.getLogger(__name__)

_AWAITING_REVIEWS = (SubmissionStatus.UNDER_REVIEW, SubmissionStatus.REVISED_SUBMITTED)


def days_until(deadline: datetime, now: datetime) -> int:
    """Whole days left before ``deadline``; negative once it has passed."""
    return (deadline - now).days


async def _outstanding(db: aiosqlite.Connection, paper: Submission) -> list[ReviewAssignment]:
    """Invitations still owing a review for the paper's current round."""
    if paper.status not in _AWAITING_REVIEWS:
        return []
    reviewed = await reviewed_this_round(db, paper)
    return [a for a in active_assignments(paper) if a.reviewer_id not in reviewed]


async def non_responding_reviewers(
    db: aiosqlite.Connection,
    actor: AuthContext,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Outstanding reviews on the caller's papers (all papers for an admin), most urgent first."""
    now = now or datetime.now(timezone.utc)
    editor_id = None if actor.role == Role.ADMIN else actor.user_id
    pending: list[tuple[Submission, ReviewAssignment]] = []
    for paper in await list_submissions(db, editor_id=editor_id):
        pending.extend((paper, a) for a in await _outstanding(db, paper))

    people = await get_users(db, (a.reviewer_id for _, a in pending))
    items: list[dict[str, Any]] = []
    for paper, assignment in pending:
        person = people.get(assignment.reviewer_id)
        items.append(
            {
                "submission_id": paper.submission_id,
                "title": paper.title,
                "reviewer_id": assignment.reviewer_id,
                "reviewer_name": (person.username or person.email) if person else "",
                "reviewer_email": person.email if person else "",
                "assignment_status": assignment.status.value,
                "deadline": assignment.deadline.isoformat(),
                "days_until_deadline": days_until(assignment.deadline, now),
                "overdue": assignment.is_overdue(now),
                "reminder_count": assignment.reminder_count,
                "last_reminder_at": (
                    assignment.last_reminder_at.isoformat() if assignment.last_reminder_at else None
                ),
            }
        )
    items.sort(key=lambda item: item["days_until_deadline"])
    return items


async def send_reminder(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    submission_id: str,
    reviewer_id: str,
    now: datetime | None = None,
) -> ReviewAssignment:
    """Mail one reviewer about an outstanding review and count the reminder."""
    now = now or datetime.now(timezone.utc)
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    assignment = paper.assignment_for(reviewer_id)
    if assignment is None:
        raise NotFound("Reviewer assignment not found")
    if reviewer_id not in {a.reviewer_id for a in await _outstanding(db, paper)}:
        raise ValidationFailed("This reviewer has no outstanding review for the paper")
    reviewer = await get_user(db, reviewer_id)

    assignment.reminder_count += 1
    assignment.last_reminder_at = now
    await save_assignment(db, assignment)
    await log_event(
        db,
        AuditAction.REVIEWER_REMINDED,
        actor_id=actor.user_id,
        target_id=submission_id,
        target_type="submission",
        details={"reviewer_id": reviewer_id, "reminder_count": assignment.reminder_count},
    )
    await db.commit()
    logger.info("reminder %d sent to %s for %s", assignment.reminder_count, reviewer.email, submission_id)

    notifier.send(
        "reviewer_reminder",
        reviewer.email,
        paper=paper,
        reviewer_name=reviewer.username or reviewer.email,
        reminder_number=assignment.reminder_count,
        deadline=assignment.deadline,
        days_remaining=days_until(assignment.deadline, now),
    )
    return assignment


async def send_bulk_reminders(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    targets: Iterable[tuple[str, str]],
    now: datetime | None = None,
) -> dict[str, list[dict[str, Any]]]:
    """Remind each ``(submission_id, reviewer_id)``; one bad entry does not stop the rest."""
    results: dict[str, list[dict[str, Any]]] = {"sent": [], "failed": []}
    for submission_id, reviewer_id in targets:
        try:
            assignment = await send_reminder(db, notifier, actor, submission_id, reviewer_id, now)
        except PaperdeskError as exc:
            results["failed"].append(
                {"submission_id": submission_id, "reviewer_id": reviewer_id, "reason": exc.message}
            )
            continue
        results["sent"].append(
            {
                "submission_id": submission_id,
                "reviewer_id": reviewer_id,
                "reminder_count": assignment.reminder_count,
            }
        )
    return results
