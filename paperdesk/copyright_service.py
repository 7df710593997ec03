"""Copyright service — the copyright form of an accepted paper and its message thread."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.database import from_json, like_contains, to_json
from paperdesk.errors import Forbidden, NotFound, ValidationFailed
from paperdesk.models import (
    AuditAction,
    Copyright,
    CopyrightMessage,
    CopyrightStatus,
    Role,
    StoredFile,
    Submission,
    SubmissionStatus,
)
from paperdesk.notifications import Notifier
from paperdesk.submission_service import (
    get_submission,
    get_submission_for,
    list_submissions,
    submission_for_file,
)

logger = logging.getLogger(__name__)

_ACCEPTED = (SubmissionStatus.ACCEPTED, SubmissionStatus.PUBLISHED)


def _row_to_copyright(row: aiosqlite.Row | dict[str, Any]) -> Copyright:
    d = dict(row)
    d["form"] = from_json(d.get("form"))
    d["messages"] = from_json(d.get("messages", "[]")) or []
    return Copyright(**d)


async def get_copyright(db: aiosqlite.Connection, submission_id: str) -> Copyright | None:
    async with db.execute(
        "SELECT * FROM copyrights WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_copyright(row) if row else None


async def save_copyright(db: aiosqlite.Connection, record: Copyright) -> None:
    record.updated_at = datetime.now(timezone.utc)
    await db.execute(
        """
        INSERT INTO copyrights (
            submission_id, copyright_id, author_email, author_name, title, form,
            status, submitted_at, messages, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(submission_id) DO UPDATE SET
            form = excluded.form,
            status = excluded.status,
            submitted_at = excluded.submitted_at,
            messages = excluded.messages,
            updated_at = excluded.updated_at
        """,
        (
            record.submission_id,
            record.copyright_id,
            record.author_email,
            record.author_name,
            record.title,
            to_json(record.form) if record.form else None,
            record.status.value,
            record.submitted_at.isoformat() if record.submitted_at else None,
            to_json(record.messages),
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        ),
    )


async def _ensure_copyright(db: aiosqlite.Connection, paper: Submission) -> Copyright:
    """Fetch the paper's copyright record, creating a Pending one on first access."""
    if paper.status not in _ACCEPTED:
        raise ValidationFailed("Copyright forms are only available for accepted papers")
    record = await get_copyright(db, paper.submission_id)
    if record is None:
        record = Copyright(
            submission_id=paper.submission_id,
            author_email=paper.author_email,
            author_name=paper.author_name,
            title=paper.title,
        )
        await save_copyright(db, record)
    return record


async def _load_for(
    db: aiosqlite.Connection,
    ctx: AuthContext,
    submission_id: str,
) -> tuple[Submission, Copyright]:
    paper = await get_submission(db, submission_id)
    if ctx.role != Role.ADMIN and paper.author_id != ctx.user_id:
        raise Forbidden("Access denied: this is not your paper")
    return paper, await _ensure_copyright(db, paper)


async def get_or_create_copyright(
    db: aiosqlite.Connection,
    ctx: AuthContext,
    submission_id: str,
) -> Copyright:
    _, record = await _load_for(db, ctx, submission_id)
    await db.commit()
    return record


async def author_copyrights(db: aiosqlite.Connection, author: AuthContext) -> list[Copyright]:
    """Copyright records for every accepted paper of the author."""
    records: list[Copyright] = []
    for paper in await list_submissions(db, author_id=author.user_id):
        if paper.status in _ACCEPTED:
            records.append(await _ensure_copyright(db, paper))
    await db.commit()
    return records


async def upload_form(
    db: aiosqlite.Connection,
    author: AuthContext,
    submission_id: str,
    form: StoredFile,
) -> Copyright:
    paper, record = await _load_for(db, author, submission_id)
    if paper.author_id != author.user_id:
        raise Forbidden("Only the author can upload the copyright form")
    if record.status == CopyrightStatus.APPROVED:
        raise ValidationFailed("Copyright form has already been approved")

    record.form = form
    record.status = CopyrightStatus.SUBMITTED
    record.submitted_at = datetime.now(timezone.utc)
    await save_copyright(db, record)
    await log_event(
        db,
        AuditAction.COPYRIGHT_UPLOADED,
        actor_id=author.user_id,
        target_id=submission_id,
        target_type="copyright",
        details={"file_id": form.file_id},
    )
    await db.commit()
    return record


async def post_message(
    db: aiosqlite.Connection,
    ctx: AuthContext,
    submission_id: str,
    message: str,
) -> Copyright:
    """Append to the thread; authors may only write on their own paper."""
    text = message.strip()
    if not text:
        raise ValidationFailed("Message cannot be empty")
    _, record = await _load_for(db, ctx, submission_id)
    sender = "Admin" if ctx.role == Role.ADMIN else "Author"
    record.messages.append(CopyrightMessage(sender=sender, sender_id=ctx.user_id, message=text))
    await save_copyright(db, record)
    await db.commit()
    return record


async def list_copyrights(
    db: aiosqlite.Connection,
    status: CopyrightStatus | None = None,
) -> list[Copyright]:
    if status:
        query = "SELECT * FROM copyrights WHERE status = ? ORDER BY updated_at DESC"
        params: tuple = (status.value,)
    else:
        query = "SELECT * FROM copyrights ORDER BY updated_at DESC"
        params = ()
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_copyright(row) for row in rows]


async def review_copyright(
    db: aiosqlite.Connection,
    notifier: Notifier,
    admin: AuthContext,
    submission_id: str,
    status: CopyrightStatus,
    comment: str = "",
) -> Copyright:
    """Approve or reject a submitted form; the verdict is appended to the thread."""
    if status not in (CopyrightStatus.APPROVED, CopyrightStatus.REJECTED):
        raise ValidationFailed("Status must be Approved or Rejected")
    record = await get_copyright(db, submission_id)
    if record is None:
        raise NotFound("Copyright record not found")
    if record.status != CopyrightStatus.SUBMITTED or record.form is None:
        raise ValidationFailed("No submitted copyright form to review")

    note = f"Review: {status.value}."
    if comment.strip():
        note = f"{note} Comment: {comment.strip()}"
    record.status = status
    record.messages.append(CopyrightMessage(sender="Admin", sender_id=admin.user_id, message=note))
    await save_copyright(db, record)
    await log_event(
        db,
        AuditAction.COPYRIGHT_REVIEWED,
        actor_id=admin.user_id,
        target_id=submission_id,
        target_type="copyright",
        details={"status": status.value},
    )
    await db.commit()
    logger.info("copyright for %s marked %s", submission_id, status.value)

    notifier.send(
        "copyright_reviewed",
        record.author_email,
        status=status.value,
        paper_id=submission_id,
        title=record.title,
        comment=comment.strip(),
    )
    return record


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------

async def authorize_download(db: aiosqlite.Connection, ctx: AuthContext, file_id: str) -> None:
    """Allow a stored file only to callers entitled to the record that holds it.

    Paper versions follow the paper's access rules; a copyright form is
    visible to the paper's author and to admins.  Unreferenced files are 404.
    """
    submission_id = await submission_for_file(db, file_id)
    if submission_id is not None:
        await get_submission_for(db, ctx, submission_id)
        return

    async with db.execute(
        "SELECT * FROM copyrights WHERE form LIKE ? ESCAPE '\\'",
        (like_contains(f'"file_id": "{file_id}"'),),
    ) as cursor:
        rows = await cursor.fetchall()
    for row in rows:
        record = _row_to_copyright(row)
        if record.form is not None and record.form.file_id == file_id:
            await _load_for(db, ctx, record.submission_id)
            return
    raise NotFound("File not found")
