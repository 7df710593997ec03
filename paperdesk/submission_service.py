"""Submission service — paper intake, editor and reviewer assignment, revisions.

This service owns the submission record.  Every status change goes through
:func:`apply_event`, which consults the lifecycle table and writes the audit
entry; callers commit once so the status and its dependent records land
together.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.config import Config
from paperdesk.database import from_json, generate_submission_id, like_contains, to_json
from paperdesk.errors import Conflict, Forbidden, NotFound, ValidationFailed
from paperdesk.lifecycle import (
    Event,
    Transition,
    allowed_events,
    can_transition,
    is_terminal,
    transition,
)
from paperdesk.models import (
    AssignmentStatus,
    AuditAction,
    PdfVersion,
    ReviewAssignment,
    Revision,
    RevisionStatus,
    Role,
    StoredFile,
    Submission,
    SubmissionCreate,
    SubmissionUpdate,
    SubmissionStatus,
)
from paperdesk.notifications import Notifier, dispatch
from paperdesk.user_service import get_user, get_users

logger = logging.getLogger(__name__)

_MAX_ID_ATTEMPTS = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_assignment(row: aiosqlite.Row | dict[str, Any]) -> ReviewAssignment:
    return ReviewAssignment(**dict(row))


def _row_to_submission(
    row: aiosqlite.Row | dict[str, Any],
    assignments: list[ReviewAssignment],
) -> Submission:
    d = dict(row)
    d["pdf"] = from_json(d.get("pdf"))
    d["versions"] = from_json(d.get("versions", "[]")) or []
    d["assignments"] = assignments
    return Submission(**d)


def _row_to_revision(row: aiosqlite.Row | dict[str, Any]) -> Revision:
    d = dict(row)
    d["reviewer_comments"] = from_json(d.get("reviewer_comments", "[]")) or []
    d["revised_pdf"] = from_json(d.get("revised_pdf"))
    return Revision(**d)


async def _assignments_for(
    db: aiosqlite.Connection,
    submission_ids: Iterable[str],
) -> dict[str, list[ReviewAssignment]]:
    ids = sorted(set(submission_ids))
    grouped: dict[str, list[ReviewAssignment]] = {sid: [] for sid in ids}
    if not ids:
        return grouped
    placeholders = ",".join("?" for _ in ids)
    async with db.execute(
        f"""
        SELECT * FROM review_assignments
        WHERE submission_id IN ({placeholders})
        ORDER BY assigned_at ASC, rowid ASC
        """,
        ids,
    ) as cursor:
        rows = await cursor.fetchall()
    for row in rows:
        grouped[row["submission_id"]].append(_row_to_assignment(row))
    return grouped


async def _hydrate(db: aiosqlite.Connection, rows: list[aiosqlite.Row]) -> list[Submission]:
    assignments = await _assignments_for(db, (row["submission_id"] for row in rows))
    return [_row_to_submission(row, assignments[row["submission_id"]]) for row in rows]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

async def get_submission(db: aiosqlite.Connection, submission_id: str) -> Submission:
    async with db.execute(
        "SELECT * FROM submissions WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFound("Paper not found")
    return (await _hydrate(db, [row]))[0]


async def save_submission(db: aiosqlite.Connection, paper: Submission) -> None:
    """Write the mutable columns of a submission (assignments are saved separately)."""
    paper.updated_at = _now()
    await db.execute(
        """
        UPDATE submissions SET
            title = ?, author_name = ?, category = ?, topic = ?, abstract = ?,
            pdf = ?, status = ?, assigned_editor_id = ?, revision_count = ?,
            editor_comments = ?, editor_corrections = ?, versions = ?, updated_at = ?
        WHERE submission_id = ?
        """,
        (
            paper.title,
            paper.author_name,
            paper.category,
            paper.topic,
            paper.abstract,
            to_json(paper.pdf) if paper.pdf else None,
            paper.status.value,
            paper.assigned_editor_id,
            paper.revision_count,
            paper.editor_comments,
            paper.editor_corrections,
            to_json(paper.versions),
            paper.updated_at.isoformat(),
            paper.submission_id,
        ),
    )


async def save_assignment(db: aiosqlite.Connection, assignment: ReviewAssignment) -> None:
    await db.execute(
        """
        INSERT INTO review_assignments (
            submission_id, reviewer_id, deadline, status, assigned_at, responded_at,
            decline_reason, reminder_count, last_reminder_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(submission_id, reviewer_id) DO UPDATE SET
            deadline = excluded.deadline,
            status = excluded.status,
            responded_at = excluded.responded_at,
            decline_reason = excluded.decline_reason,
            reminder_count = excluded.reminder_count,
            last_reminder_at = excluded.last_reminder_at
        """,
        (
            assignment.submission_id,
            assignment.reviewer_id,
            assignment.deadline.isoformat(),
            assignment.status.value,
            assignment.assigned_at.isoformat(),
            assignment.responded_at.isoformat() if assignment.responded_at else None,
            assignment.decline_reason,
            assignment.reminder_count,
            assignment.last_reminder_at.isoformat() if assignment.last_reminder_at else None,
        ),
    )


async def get_revision(db: aiosqlite.Connection, submission_id: str) -> Revision | None:
    async with db.execute(
        "SELECT * FROM revisions WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_revision(row) if row else None


async def save_revision(db: aiosqlite.Connection, revision: Revision) -> None:
    revision.updated_at = _now()
    await db.execute(
        """
        INSERT INTO revisions (
            submission_id, revision_round, revision_status, revision_message, deadline,
            editor_id, reviewer_comments, revised_pdf, author_response,
            requested_at, resubmitted_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(submission_id) DO UPDATE SET
            revision_round = excluded.revision_round,
            revision_status = excluded.revision_status,
            revision_message = excluded.revision_message,
            deadline = excluded.deadline,
            editor_id = excluded.editor_id,
            reviewer_comments = excluded.reviewer_comments,
            revised_pdf = excluded.revised_pdf,
            author_response = excluded.author_response,
            requested_at = excluded.requested_at,
            resubmitted_at = excluded.resubmitted_at,
            updated_at = excluded.updated_at
        """,
        (
            revision.submission_id,
            revision.revision_round,
            revision.revision_status.value,
            revision.revision_message,
            revision.deadline.isoformat(),
            revision.editor_id,
            to_json(revision.reviewer_comments),
            to_json(revision.revised_pdf) if revision.revised_pdf else None,
            revision.author_response,
            revision.requested_at.isoformat(),
            revision.resubmitted_at.isoformat() if revision.resubmitted_at else None,
            revision.updated_at.isoformat(),
        ),
    )


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

async def apply_event(
    db: aiosqlite.Connection,
    paper: Submission,
    event: Event,
    actor_id: str,
    **details: Any,
) -> Transition:
    """Move ``paper`` along the lifecycle and record the change.  Does not save or commit."""
    step = transition(paper.status, event)
    previous = paper.status
    paper.status = step.target
    await log_event(
        db,
        AuditAction.STATUS_CHANGED,
        actor_id=actor_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={
            "event": event.value,
            "from": previous.value,
            "to": step.target.value,
            **details,
        },
    )
    return step


async def reviewed_this_round(db: aiosqlite.Connection, paper: Submission) -> set[str]:
    """Reviewer IDs holding a review for the submission's current round."""
    async with db.execute(
        "SELECT reviewer_id FROM reviews WHERE submission_id = ? AND review_round = ?",
        (paper.submission_id, paper.review_round),
    ) as cursor:
        rows = await cursor.fetchall()
    return {row[0] for row in rows}


def active_assignments(paper: Submission) -> list[ReviewAssignment]:
    return [a for a in paper.assignments if a.status != AssignmentStatus.DECLINED]


async def maybe_complete_round(
    db: aiosqlite.Connection,
    paper: Submission,
    actor_id: str,
) -> Transition | None:
    """Fire the round-complete event once every active reviewer has reported.

    Pending invitations hold the round open.
    """
    if paper.status == SubmissionStatus.UNDER_REVIEW:
        event = Event.ALL_REVIEWS_RECEIVED
    elif paper.status == SubmissionStatus.REVISED_SUBMITTED:
        event = Event.REREVIEW_COMPLETE
    else:
        return None

    active = active_assignments(paper)
    if not active or any(a.status == AssignmentStatus.PENDING for a in active):
        return None
    reviewed = await reviewed_this_round(db, paper)
    if not all(a.reviewer_id in reviewed for a in active):
        return None
    return await apply_event(db, paper, event, actor_id, review_round=paper.review_round)


async def _contact_emails(
    db: aiosqlite.Connection,
    paper: Submission,
    reviewer_ids: Iterable[str] | None = None,
) -> tuple[str | None, list[str]]:
    ids = list(reviewer_ids) if reviewer_ids is not None else [
        a.reviewer_id for a in active_assignments(paper)
    ]
    lookup = list(ids)
    if paper.assigned_editor_id:
        lookup.append(paper.assigned_editor_id)
    users = await get_users(db, lookup)
    editor = users.get(paper.assigned_editor_id or "")
    return (editor.email if editor else None), [users[i].email for i in ids if i in users]


async def notify_transition(
    db: aiosqlite.Connection,
    notifier: Notifier,
    paper: Submission,
    step: Transition | None,
    *,
    reviewer_ids: Iterable[str] | None = None,
    **context: Any,
) -> None:
    """Send the notifications a committed transition calls for."""
    if step is None:
        return
    editor_email, reviewer_emails = await _contact_emails(db, paper, reviewer_ids)
    dispatch(
        notifier,
        step.effects,
        paper,
        editor_email=editor_email,
        reviewer_emails=reviewer_emails,
        **context,
    )


def is_handling_editor(paper: Submission, actor: AuthContext) -> bool:
    if actor.role == Role.ADMIN:
        return True
    return actor.role == Role.EDITOR and paper.assigned_editor_id == actor.user_id


def ensure_handling_editor(paper: Submission, actor: AuthContext) -> None:
    """Only the assigned editor or an admin may act on a paper's review."""
    if not is_handling_editor(paper, actor):
        raise Forbidden("Access denied: you are not the editor assigned to this paper")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def submit_paper(
    db: aiosqlite.Connection,
    notifier: Notifier,
    author: AuthContext,
    payload: SubmissionCreate,
    pdf: StoredFile,
) -> Submission:
    """Create a submission in status Submitted with its first PDF version."""
    now = _now()
    for _ in range(_MAX_ID_ATTEMPTS):
        submission_id = await generate_submission_id(db, payload.category)
        paper = Submission(
            submission_id=submission_id,
            title=payload.title.strip(),
            author_id=author.user_id,
            author_name=payload.author_name.strip(),
            author_email=author.email,
            category=payload.category.strip(),
            topic=payload.topic.strip(),
            abstract=payload.abstract.strip(),
            pdf=pdf,
            versions=[PdfVersion(version=1, pdf=pdf, submitted_at=now)],
            created_at=now,
            updated_at=now,
        )
        try:
            await db.execute(
                """
                INSERT INTO submissions (
                    submission_id, title, author_id, author_name, author_email, category,
                    topic, abstract, pdf, status, assigned_editor_id, revision_count,
                    editor_comments, editor_corrections, versions, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    paper.submission_id,
                    paper.title,
                    paper.author_id,
                    paper.author_name,
                    paper.author_email,
                    paper.category,
                    paper.topic,
                    paper.abstract,
                    to_json(paper.pdf),
                    paper.status.value,
                    None,
                    0,
                    "",
                    "",
                    to_json(paper.versions),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        except aiosqlite.IntegrityError:
            logger.warning("submission id %s taken, retrying", submission_id)
            continue
        break
    else:
        raise Conflict("Could not allocate a submission ID, please retry")

    await log_event(
        db,
        AuditAction.PAPER_SUBMITTED,
        actor_id=author.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"title": paper.title, "category": paper.category},
    )
    await db.commit()
    logger.info("paper %s submitted by %s", paper.submission_id, author.email)

    notifier.send("submission_confirmation", paper.author_email, paper=paper)
    return paper


# ---------------------------------------------------------------------------
# Pre-review edits
# ---------------------------------------------------------------------------

async def edit_target(
    db: aiosqlite.Connection,
    author: AuthContext,
    submission_id: str,
) -> Submission:
    """Load a paper its author may still change: before any reviewer is invited."""
    paper = await get_submission(db, submission_id)
    if paper.author_id != author.user_id:
        raise Forbidden("Access denied: you can only edit your own papers")
    transition(paper.status, Event.EDIT_SUBMISSION)
    return paper


async def edit_submission(
    db: aiosqlite.Connection,
    author: AuthContext,
    submission_id: str,
    changes: SubmissionUpdate,
) -> Submission:
    """Update the descriptive fields of a paper.  The submission ID never changes."""
    paper = await edit_target(db, author, submission_id)
    updates = {name: value.strip() for name, value in changes.model_dump(exclude_none=True).items()}
    if not updates:
        raise ValidationFailed("No changes supplied")
    blank = [name for name in ("title", "author_name", "category") if updates.get(name) == ""]
    if blank:
        raise ValidationFailed("Validation failed", [f"{name}: must not be blank" for name in blank])
    for name, value in updates.items():
        setattr(paper, name, value)

    await save_submission(db, paper)
    await log_event(
        db,
        AuditAction.SUBMISSION_EDITED,
        actor_id=author.user_id,
        target_id=submission_id,
        target_type="submission",
        details={"fields": sorted(updates)},
    )
    await db.commit()
    logger.info("paper %s edited by %s: %s", submission_id, author.email, ", ".join(sorted(updates)))
    return paper


async def replace_pdf(
    db: aiosqlite.Connection,
    author: AuthContext,
    submission_id: str,
    pdf: StoredFile,
) -> Submission:
    """Make ``pdf`` the current file; earlier uploads stay in the version history."""
    paper = await edit_target(db, author, submission_id)
    version = len(paper.versions) + 1
    paper.pdf = pdf
    paper.versions.append(PdfVersion(version=version, pdf=pdf, submitted_at=_now()))

    await save_submission(db, paper)
    await log_event(
        db,
        AuditAction.PDF_REPLACED,
        actor_id=author.user_id,
        target_id=submission_id,
        target_type="submission",
        details={"version": version, "file_id": pdf.file_id},
    )
    await db.commit()
    logger.info("paper %s re-uploaded as version %d", submission_id, version)
    return paper


# ---------------------------------------------------------------------------
# Editor assignment
# ---------------------------------------------------------------------------

async def _require_role(db: aiosqlite.Connection, user_id: str, role: Role, label: str):
    try:
        user = await get_user(db, user_id)
    except NotFound:
        user = None
    if user is None or user.role != role:
        raise ValidationFailed(f"Invalid {label}: user {user_id} is not an {label}")
    return user


async def assign_editor(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    submission_id: str,
    editor_id: str,
) -> Submission:
    paper = await get_submission(db, submission_id)
    await _require_role(db, editor_id, Role.EDITOR, "editor")

    step = await apply_event(db, paper, Event.ASSIGN_EDITOR, actor.user_id, editor_id=editor_id)
    paper.assigned_editor_id = editor_id
    await save_submission(db, paper)
    await db.commit()

    await notify_transition(db, notifier, paper, step, reviewer_ids=[])
    return paper


async def reassign_editor(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    submission_id: str,
    editor_id: str,
) -> Submission:
    """Hand a paper in progress to a different editor; status is unchanged."""
    paper = await get_submission(db, submission_id)
    await _require_role(db, editor_id, Role.EDITOR, "editor")
    if paper.assigned_editor_id == editor_id:
        raise Conflict("This editor is already assigned to the paper")

    previous = paper.assigned_editor_id
    step = await apply_event(db, paper, Event.REASSIGN_EDITOR, actor.user_id, editor_id=editor_id)
    paper.assigned_editor_id = editor_id
    await save_submission(db, paper)
    await log_event(
        db,
        AuditAction.EDITOR_REASSIGNED,
        actor_id=actor.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"from": previous, "to": editor_id},
    )
    await db.commit()

    await notify_transition(db, notifier, paper, step, reviewer_ids=[])
    return paper


# ---------------------------------------------------------------------------
# Reviewer assignment
# ---------------------------------------------------------------------------

def resolve_deadline(
    deadline: str | date | datetime | None,
    days: int | None,
    default_days: int,
    *,
    now: datetime | None = None,
) -> datetime:
    """Turn an explicit date, or a number of days from now, into a UTC deadline.

    A bare date means the end of that day.
    """
    current = now or _now()
    if deadline in (None, ""):
        span = default_days if days is None else days
        if span < 1:
            raise ValidationFailed("Deadline days must be at least 1")
        return current + timedelta(days=span)

    if isinstance(deadline, str):
        text = deadline.strip()
        try:
            parsed: date | datetime = (
                date.fromisoformat(text) if len(text) == 10 else datetime.fromisoformat(text)
            )
        except ValueError as exc:
            raise ValidationFailed(f"Invalid deadline: {deadline}") from exc
    else:
        parsed = deadline

    if isinstance(parsed, datetime):
        resolved = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    else:
        resolved = datetime.combine(parsed, time.max, tzinfo=timezone.utc)
    if resolved <= current:
        raise ValidationFailed("Deadline must be in the future")
    return resolved


async def assign_reviewers(
    db: aiosqlite.Connection,
    notifier: Notifier,
    config: Config,
    actor: AuthContext,
    submission_id: str,
    reviewer_ids: list[str],
    *,
    deadline: str | date | datetime | None = None,
    deadline_days: int | None = None,
) -> Submission:
    """Invite reviewers.  New assignments are appended, existing ones are never replaced."""
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)

    requested = list(dict.fromkeys(r.strip() for r in reviewer_ids if r and r.strip()))
    if not requested:
        raise ValidationFailed("At least one reviewer is required")

    users = await get_users(db, requested)
    invalid = [rid for rid in requested if rid not in users or users[rid].role != Role.REVIEWER]
    if invalid:
        raise ValidationFailed(
            "Some reviewers are invalid",
            [f"User {rid} is not a reviewer" for rid in invalid],
        )
    already = [rid for rid in requested if paper.assignment_for(rid) is not None]
    if already:
        raise Conflict(
            "Some reviewers are already assigned to this paper",
            [f"Reviewer {rid} is already assigned" for rid in already],
        )

    due = resolve_deadline(deadline, deadline_days, config.workflow.review_deadline_days)

    step = await apply_event(
        db, paper, Event.ASSIGN_REVIEWERS, actor.user_id, reviewer_ids=requested
    )
    for rid in requested:
        assignment = ReviewAssignment(submission_id=paper.submission_id, reviewer_id=rid, deadline=due)
        await save_assignment(db, assignment)
        paper.assignments.append(assignment)
    await save_submission(db, paper)
    await log_event(
        db,
        AuditAction.REVIEWERS_ASSIGNED,
        actor_id=actor.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"reviewer_ids": requested, "deadline": due.isoformat()},
    )
    await db.commit()
    logger.info("assigned %d reviewer(s) to %s", len(requested), paper.submission_id)

    await notify_transition(db, notifier, paper, step, reviewer_ids=requested, deadline=due)
    return paper


async def respond_to_assignment(
    db: aiosqlite.Connection,
    notifier: Notifier,
    reviewer: AuthContext,
    submission_id: str,
    *,
    accept: bool,
    reason: str = "",
) -> ReviewAssignment:
    """A reviewer accepts or declines an invitation; the editor is told either way."""
    paper = await get_submission(db, submission_id)
    assignment = paper.assignment_for(reviewer.user_id)
    if assignment is None:
        raise NotFound("Assignment not found")
    if assignment.status != AssignmentStatus.PENDING:
        raise ValidationFailed(f"Assignment already {assignment.status.value.lower()}")
    if not accept and not reason.strip():
        raise ValidationFailed("A reason is required to decline an assignment")

    assignment.status = AssignmentStatus.ACCEPTED if accept else AssignmentStatus.DECLINED
    assignment.responded_at = _now()
    assignment.decline_reason = "" if accept else reason.strip()
    await save_assignment(db, assignment)
    await log_event(
        db,
        AuditAction.ASSIGNMENT_ACCEPTED if accept else AuditAction.ASSIGNMENT_DECLINED,
        actor_id=reviewer.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"reason": assignment.decline_reason} if not accept else {},
    )
    step = await maybe_complete_round(db, paper, reviewer.user_id)
    if step is not None:
        await save_submission(db, paper)
    await db.commit()

    editor_email, _ = await _contact_emails(db, paper, reviewer_ids=[])
    kind = "assignment_accepted" if accept else "assignment_declined"
    notifier.send(kind, editor_email, paper=paper, reviewer=reviewer.email, reason=assignment.decline_reason)
    await notify_transition(db, notifier, paper, step)
    return assignment


async def remove_reviewer(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    submission_id: str,
    reviewer_id: str,
) -> Submission:
    """Withdraw a reviewer who has not reported for the current round."""
    paper = await get_submission(db, submission_id)
    ensure_handling_editor(paper, actor)
    assignment = paper.assignment_for(reviewer_id)
    if assignment is None:
        raise NotFound("Reviewer is not assigned to this paper")
    if reviewer_id in await reviewed_this_round(db, paper):
        raise ValidationFailed("Cannot remove a reviewer who has already submitted a review")
    remaining = [a for a in active_assignments(paper) if a.reviewer_id != reviewer_id]
    if not remaining and paper.status in (SubmissionStatus.UNDER_REVIEW, SubmissionStatus.REVISED_SUBMITTED):
        raise ValidationFailed("Cannot remove the last active reviewer; assign another first")

    await db.execute(
        "DELETE FROM review_assignments WHERE submission_id = ? AND reviewer_id = ?",
        (submission_id, reviewer_id),
    )
    paper.assignments = [a for a in paper.assignments if a.reviewer_id != reviewer_id]
    await log_event(
        db,
        AuditAction.REVIEWER_REMOVED,
        actor_id=actor.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"reviewer_id": reviewer_id},
    )
    step = await maybe_complete_round(db, paper, actor.user_id)
    await save_submission(db, paper)
    await db.commit()

    removed = await get_users(db, [reviewer_id])
    if reviewer_id in removed:
        notifier.send("reviewer_removed", removed[reviewer_id].email, paper=paper)
    await notify_transition(db, notifier, paper, step)
    return paper


# ---------------------------------------------------------------------------
# Revised paper
# ---------------------------------------------------------------------------

async def revision_target(
    db: aiosqlite.Connection,
    author: AuthContext,
    submission_id: str,
) -> tuple[Submission, Revision]:
    """Load the paper and its open revision, checking the author may resubmit now."""
    paper = await get_submission(db, submission_id)
    if paper.author_id != author.user_id:
        raise Forbidden("Access denied: you can only revise your own papers")
    revision = await get_revision(db, submission_id)
    if revision is None:
        raise NotFound("No revision has been requested for this paper")
    transition(paper.status, Event.SUBMIT_REVISION)
    return paper, revision


async def submit_revision(
    db: aiosqlite.Connection,
    notifier: Notifier,
    author: AuthContext,
    submission_id: str,
    pdf: StoredFile,
    author_response: str = "",
) -> tuple[Submission, Revision]:
    """The author uploads a revised PDF, opening the next review round."""
    paper, revision = await revision_target(db, author, submission_id)

    step = await apply_event(db, paper, Event.SUBMIT_REVISION, author.user_id)
    now = _now()
    revision.revision_status = RevisionStatus.RESUBMITTED
    revision.revised_pdf = pdf
    revision.author_response = author_response.strip()
    revision.resubmitted_at = now

    paper.pdf = pdf
    paper.revision_count += 1
    paper.versions.append(PdfVersion(version=len(paper.versions) + 1, pdf=pdf, submitted_at=now))
    # Reviewers who reported last round are asked again.
    for assignment in paper.assignments:
        if assignment.status == AssignmentStatus.SUBMITTED:
            assignment.status = AssignmentStatus.ACCEPTED
            await save_assignment(db, assignment)

    await save_revision(db, revision)
    await save_submission(db, paper)
    await log_event(
        db,
        AuditAction.REVISION_SUBMITTED,
        actor_id=author.user_id,
        target_id=paper.submission_id,
        target_type="submission",
        details={"revision_round": revision.revision_round, "version": len(paper.versions)},
    )
    await db.commit()
    logger.info("revision %d submitted for %s", paper.revision_count, paper.submission_id)

    await notify_transition(db, notifier, paper, step)
    return paper, revision


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def list_submissions(
    db: aiosqlite.Connection,
    *,
    author_id: str | None = None,
    editor_id: str | None = None,
    status: SubmissionStatus | None = None,
) -> list[Submission]:
    clauses: list[str] = []
    params: list[Any] = []
    if author_id:
        clauses.append("author_id = ?")
        params.append(author_id)
    if editor_id:
        clauses.append("assigned_editor_id = ?")
        params.append(editor_id)
    if status:
        clauses.append("status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM submissions {where} ORDER BY created_at DESC", params
    ) as cursor:
        rows = await cursor.fetchall()
    return await _hydrate(db, list(rows))


async def get_submission_for(
    db: aiosqlite.Connection,
    ctx: AuthContext,
    submission_id: str,
) -> Submission:
    """Load a submission the caller is entitled to see."""
    paper = await get_submission(db, submission_id)
    if ctx.role == Role.ADMIN:
        return paper
    if ctx.role == Role.AUTHOR and paper.author_id == ctx.user_id:
        return paper
    if ctx.role == Role.EDITOR and paper.assigned_editor_id == ctx.user_id:
        return paper
    if ctx.role == Role.REVIEWER and paper.assignment_for(ctx.user_id) is not None:
        return paper
    raise Forbidden("Access denied: you do not have access to this paper")


async def list_reviewer_assignments(
    db: aiosqlite.Connection,
    reviewer_id: str,
) -> list[dict[str, Any]]:
    """A reviewer's invitations with the paper summary and whether this round is reviewed."""
    async with db.execute(
        """
        SELECT s.* FROM submissions s
        JOIN review_assignments a ON a.submission_id = s.submission_id
        WHERE a.reviewer_id = ?
        ORDER BY a.assigned_at DESC
        """,
        (reviewer_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    papers = await _hydrate(db, list(rows))

    items: list[dict[str, Any]] = []
    for paper in papers:
        assignment = paper.assignment_for(reviewer_id)
        if assignment is None:
            continue
        reviewed = reviewer_id in await reviewed_this_round(db, paper)
        items.append(
            {
                "submission_id": paper.submission_id,
                "title": paper.title,
                "category": paper.category,
                "abstract": paper.abstract,
                "pdf": paper.pdf.model_dump(mode="json") if paper.pdf else None,
                "paper_status": paper.status.value,
                "review_round": paper.review_round,
                "assignment_status": assignment.status.value,
                "display_status": assignment.display_status,
                "deadline": assignment.deadline.isoformat(),
                "reviewed_this_round": reviewed,
            }
        )
    return items


async def submission_for_file(db: aiosqlite.Connection, file_id: str) -> str | None:
    """ID of the paper whose version history holds ``file_id``, if any."""
    pattern = like_contains(f'"file_id": "{file_id}"')
    async with db.execute(
        "SELECT submission_id, versions FROM submissions WHERE versions LIKE ? ESCAPE '\\'",
        (pattern,),
    ) as cursor:
        rows = await cursor.fetchall()
    for row in rows:
        for version in from_json(row["versions"]) or []:
            if version["pdf"]["file_id"] == file_id:
                return row["submission_id"]
    return None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def public_view(paper: Submission, ctx: AuthContext) -> dict[str, Any]:
    """A paper as the caller may see it.

    Authors never see the reviewer list; a reviewer sees only their own
    invitation.  ``allowed_events`` lists what the lifecycle permits next.
    """
    data = paper.to_public()
    data["allowed_events"] = [event.value for event in allowed_events(paper.status)]
    data["editable"] = can_transition(paper.status, Event.EDIT_SUBMISSION)
    data["closed"] = is_terminal(paper.status)
    if ctx.role == Role.AUTHOR:
        data.pop("assignments")
    elif ctx.role == Role.REVIEWER:
        data["assignments"] = [
            raw for raw in data["assignments"] if raw["reviewer_id"] == ctx.user_id
        ]
    return data


def revision_view(paper: Submission, revision: Revision, ctx: AuthContext) -> dict[str, Any]:
    """The full snapshot for the handling editor, the anonymous one for everybody else."""
    if is_handling_editor(paper, ctx):
        return revision.model_dump(mode="json")
    return revision.author_view()
