"""Message service — per-paper conversations with the handling editor.

Each paper has one author thread (author and editor) and one thread per
invited reviewer (reviewer and editor).  Authors never see reviewer threads,
and reviewers see only their own.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.errors import Forbidden, NotFound, ValidationFailed
from paperdesk.models import AuditAction, PaperMessage, Role, Submission, Thread
from paperdesk.notifications import Notifier
from paperdesk.submission_service import ensure_handling_editor, get_submission, is_handling_editor
from paperdesk.user_service import get_user

logger = logging.getLogger(__name__)


def _row_to_message(row: aiosqlite.Row | dict[str, Any]) -> PaperMessage:
    return PaperMessage(**dict(row))


def _thread_key(paper: Submission, ctx: AuthContext, thread: Thread, reviewer_id: str) -> str:
    """Check ``ctx`` takes part in the thread; return the reviewer it belongs to."""
    if thread == Thread.AUTHOR:
        if ctx.role == Role.AUTHOR and paper.author_id == ctx.user_id:
            return ""
        if is_handling_editor(paper, ctx):
            return ""
        raise Forbidden("Access denied: you are not part of this conversation")

    if ctx.role == Role.REVIEWER:
        if paper.assignment_for(ctx.user_id) is None:
            raise Forbidden("Access denied: you are not assigned to review this paper")
        return ctx.user_id
    ensure_handling_editor(paper, ctx)
    if not reviewer_id or paper.assignment_for(reviewer_id) is None:
        raise NotFound("Reviewer assignment not found")
    return reviewer_id


async def _recipient(
    db: aiosqlite.Connection,
    paper: Submission,
    ctx: AuthContext,
    thread: Thread,
    key: str,
) -> str | None:
    if ctx.role in (Role.AUTHOR, Role.REVIEWER):
        if not paper.assigned_editor_id:
            return None
        return (await get_user(db, paper.assigned_editor_id)).email
    if thread == Thread.AUTHOR:
        return paper.author_email
    return (await get_user(db, key)).email


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def send_message(
    db: aiosqlite.Connection,
    notifier: Notifier,
    ctx: AuthContext,
    submission_id: str,
    body: str,
    *,
    thread: Thread,
    reviewer_id: str = "",
) -> PaperMessage:
    """Append a message to a thread and notify the other side.

    Editors and admins must name the reviewer of a reviewer thread; a
    reviewer always writes to their own.
    """
    text = body.strip()
    if not text:
        raise ValidationFailed("Message cannot be empty")
    paper = await get_submission(db, submission_id)
    key = _thread_key(paper, ctx, thread, reviewer_id)

    message = PaperMessage(
        submission_id=submission_id,
        thread=thread,
        reviewer_id=key,
        sender_id=ctx.user_id,
        sender_role=ctx.role,
        sender_name=ctx.username or ctx.email,
        body=text,
    )
    await db.execute(
        """
        INSERT INTO messages (
            message_id, submission_id, thread, reviewer_id, sender_id,
            sender_role, sender_name, body, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            message.message_id,
            message.submission_id,
            message.thread.value,
            message.reviewer_id,
            message.sender_id,
            message.sender_role.value,
            message.sender_name,
            message.body,
            message.created_at.isoformat(),
        ),
    )
    await log_event(
        db,
        AuditAction.MESSAGE_SENT,
        actor_id=ctx.user_id,
        target_id=submission_id,
        target_type="submission",
        details={"thread": thread.value, "reviewer_id": key},
    )
    await db.commit()
    logger.info("%s message on %s from %s", thread.value, submission_id, ctx.email)

    staff = ctx.role in (Role.EDITOR, Role.ADMIN)
    notifier.send(
        "new_message",
        await _recipient(db, paper, ctx, thread, key),
        paper=paper,
        sender="The editorial office" if staff else message.sender_name,
        body=text,
    )
    return message


async def get_thread(
    db: aiosqlite.Connection,
    ctx: AuthContext,
    submission_id: str,
    *,
    thread: Thread,
    reviewer_id: str = "",
) -> list[PaperMessage]:
    """Messages of one thread, oldest first."""
    paper = await get_submission(db, submission_id)
    key = _thread_key(paper, ctx, thread, reviewer_id)
    async with db.execute(
        """
        SELECT * FROM messages
        WHERE submission_id = ? AND thread = ? AND reviewer_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (submission_id, thread.value, key),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_message(row) for row in rows]


async def reviewer_threads(db: aiosqlite.Connection, reviewer_id: str) -> list[dict[str, Any]]:
    """One summary per paper on which the reviewer has a conversation, newest first."""
    async with db.execute(
        """
        SELECT m.submission_id, s.title, COUNT(*) AS message_count,
               MAX(m.created_at) AS last_message_at
        FROM messages m JOIN submissions s ON s.submission_id = m.submission_id
        WHERE m.thread = ? AND m.reviewer_id = ?
        GROUP BY m.submission_id, s.title
        ORDER BY last_message_at DESC
        """,
        (Thread.REVIEWER.value, reviewer_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]
