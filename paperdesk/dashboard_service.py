"""Dashboard service — per-role counts for the landing pages."""

from __future__ import annotations

from collections import Counter
from typing import Any

import aiosqlite

from paperdesk.lifecycle import is_terminal
from paperdesk.models import AssignmentStatus, Recommendation, Role, SubmissionStatus
from paperdesk.review_service import get_reviews_by_reviewer
from paperdesk.submission_service import list_reviewer_assignments, list_submissions

_ACTION_LIMIT = 10


def _by_status(statuses: list[SubmissionStatus]) -> dict[str, int]:
    counts = Counter(statuses)
    return {status.value: counts.get(status, 0) for status in SubmissionStatus}


async def editor_dashboard(db: aiosqlite.Connection, editor_id: str) -> dict[str, Any]:
    """Counts over the editor's papers and the ones waiting on the editor.

    A paper needs action when no reviewer has been invited yet or its
    reviews are in and a decision is due.
    """
    papers = await list_submissions(db, editor_id=editor_id)
    needs_reviewers = [p for p in papers if p.status == SubmissionStatus.EDITOR_ASSIGNED]
    awaiting_decision = [p for p in papers if p.status == SubmissionStatus.REVIEW_RECEIVED]
    return {
        "total_assigned": len(papers),
        "open": sum(1 for p in papers if not is_terminal(p.status)),
        "needs_reviewers": len(needs_reviewers),
        "under_review": sum(
            1 for p in papers
            if p.status in (SubmissionStatus.UNDER_REVIEW, SubmissionStatus.REVISED_SUBMITTED)
        ),
        "awaiting_decision": len(awaiting_decision),
        "papers_by_status": _by_status([p.status for p in papers]),
        "papers_requiring_action": [
            {"submission_id": p.submission_id, "title": p.title, "status": p.status.value}
            for p in (needs_reviewers + awaiting_decision)[:_ACTION_LIMIT]
        ],
    }


async def reviewer_dashboard(db: aiosqlite.Connection, reviewer_id: str) -> dict[str, Any]:
    assignments = await list_reviewer_assignments(db, reviewer_id)
    reviews = await get_reviews_by_reviewer(db, reviewer_id)
    recommendations = Counter(r.recommendation for r in reviews)
    waiting = [
        a for a in assignments
        if a["assignment_status"] in (AssignmentStatus.PENDING.value, AssignmentStatus.ACCEPTED.value)
        and not a["reviewed_this_round"]
        and not is_terminal(SubmissionStatus(a["paper_status"]))
    ]
    return {
        "total_assigned": len(assignments),
        "invitations_pending": sum(
            1 for a in assignments if a["assignment_status"] == AssignmentStatus.PENDING.value
        ),
        "reviews_pending": len(waiting),
        "reviews_submitted": len(reviews),
        "overdue": sum(1 for a in waiting if a["display_status"] == "Overdue"),
        "reviews_by_recommendation": {rec.value: recommendations.get(rec, 0) for rec in Recommendation},
        "pending_papers": [
            {
                "submission_id": a["submission_id"],
                "title": a["title"],
                "deadline": a["deadline"],
                "display_status": a["display_status"],
            }
            for a in waiting[:_ACTION_LIMIT]
        ],
    }


async def admin_dashboard(db: aiosqlite.Connection) -> dict[str, Any]:
    papers = await list_submissions(db)
    async with db.execute("SELECT role, COUNT(*) FROM users GROUP BY role") as cursor:
        rows = await cursor.fetchall()
    users = {row[0]: row[1] for row in rows}
    return {
        "total_papers": len(papers),
        "unassigned": sum(1 for p in papers if p.assigned_editor_id is None),
        "papers_by_status": _by_status([p.status for p in papers]),
        "total_users": sum(users.values()),
        "users_by_role": {role.value: users.get(role.value, 0) for role in Role},
        "recent_papers": [
            {
                "submission_id": p.submission_id,
                "title": p.title,
                "status": p.status.value,
                "created_at": p.created_at.isoformat(),
            }
            for p in papers[:_ACTION_LIMIT]
        ],
    }
