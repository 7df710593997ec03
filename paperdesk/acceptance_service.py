"""Acceptance service — accepted-paper records, registration, certificates, publication."""

from __future__ import annotations

import logging
import secrets
import string
import time
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext
from paperdesk.config import Config
from paperdesk.copyright_service import get_copyright
from paperdesk.database import from_json, to_json
from paperdesk.errors import Conflict, Forbidden, NotFound, ValidationFailed
from paperdesk.lifecycle import Event, transition
from paperdesk.models import (
    AcceptanceStatus,
    AuditAction,
    CopyrightStatus,
    FinalAcceptance,
    PaymentStatus,
    Registration,
    SubmissionStatus,
    average_rating,
)
from paperdesk.notifications import Notifier
from paperdesk.submission_service import (
    apply_event,
    get_submission,
    notify_transition,
    save_submission,
)

logger = logging.getLogger(__name__)

_CERT_ALPHABET = string.ascii_uppercase + string.digits


def certificate_number(conference: str, year: int, *, now_ms: int | None = None) -> str:
    """<CONF>-<year>-<epoch millis>-<6 random characters>."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_CERT_ALPHABET) for _ in range(6))
    return f"{conference}-{year}-{stamp}-{suffix}"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _row_to_acceptance(row: aiosqlite.Row | dict[str, Any]) -> FinalAcceptance:
    return FinalAcceptance.model_validate(from_json(dict(row)["data"]))


async def save_acceptance(db: aiosqlite.Connection, record: FinalAcceptance) -> None:
    """Upsert the snapshot; aggregates are recomputed on every save."""
    record.refresh_aggregates()
    record.updated_at = datetime.now(timezone.utc)
    await db.execute(
        """
        INSERT INTO final_acceptances (
            submission_id, data, category, author_email, acceptance_status,
            average_rating, certificate_number, accepted_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(submission_id) DO UPDATE SET
            data = excluded.data,
            acceptance_status = excluded.acceptance_status,
            average_rating = excluded.average_rating
        """,
        (
            record.submission_id,
            to_json(record),
            record.category,
            record.author_email,
            record.acceptance_status.value,
            record.average_rating,
            record.certificate_number,
            record.accepted_at.isoformat(),
        ),
    )


async def get_acceptance(db: aiosqlite.Connection, submission_id: str) -> FinalAcceptance:
    async with db.execute(
        "SELECT data FROM final_acceptances WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFound("Accepted paper not found")
    return _row_to_acceptance(row)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def list_accepted(
    db: aiosqlite.Connection,
    *,
    category: str | None = None,
    author_email: str | None = None,
    min_rating: float | None = None,
) -> list[FinalAcceptance]:
    clauses: list[str] = []
    params: list[Any] = []
    if category:
        clauses.append("category = ?")
        params.append(category)
    if author_email:
        clauses.append("author_email = ?")
        params.append(author_email.strip().lower())
    if min_rating is not None:
        clauses.append("average_rating >= ?")
        params.append(min_rating)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    order = "average_rating DESC, accepted_at DESC" if min_rating is not None else "accepted_at DESC"
    async with db.execute(
        f"SELECT data FROM final_acceptances {where} ORDER BY {order}", params
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_acceptance(row) for row in rows]


async def acceptance_statistics(db: aiosqlite.Connection) -> dict[str, Any]:
    records = await list_accepted(db)
    by_status = Counter(r.acceptance_status.value for r in records)
    ratings: dict[str, list[float]] = defaultdict(list)
    for r in records:
        ratings[r.category].append(r.average_rating)
    return {
        "total_accepted": len(records),
        "by_status": {s.value: by_status.get(s.value, 0) for s in AcceptanceStatus},
        "by_category": [
            {"category": cat, "count": len(vals), "average_rating": average_rating(vals)}
            for cat, vals in sorted(ratings.items())
        ],
        "average_rating": average_rating([r.average_rating for r in records]),
    }


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def _row_to_registration(row: aiosqlite.Row | dict[str, Any]) -> Registration:
    return Registration(**dict(row))


async def get_registration(db: aiosqlite.Connection, submission_id: str) -> Registration | None:
    async with db.execute(
        "SELECT * FROM registrations WHERE submission_id = ?", (submission_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_registration(row) if row else None


async def register_paper(
    db: aiosqlite.Connection,
    config: Config,
    author: AuthContext,
    submission_id: str,
) -> Registration:
    """One registration per accepted paper, numbered REG-<year>-<submission id>."""
    paper = await get_submission(db, submission_id)
    if paper.author_id != author.user_id:
        raise Forbidden("Access denied: you can only register your own papers")
    if paper.status not in (SubmissionStatus.ACCEPTED, SubmissionStatus.PUBLISHED):
        raise ValidationFailed("Only accepted papers can be registered")
    if await get_registration(db, submission_id) is not None:
        raise Conflict("Paper already registered")

    record = Registration(
        submission_id=submission_id,
        registration_number=f"REG-{config.workflow.conference_year}-{submission_id}",
        author_email=paper.author_email,
    )
    await db.execute(
        """
        INSERT INTO registrations (
            submission_id, registration_number, author_email, payment_status, registered_at, paid_at
        ) VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record.submission_id,
            record.registration_number,
            record.author_email,
            record.payment_status.value,
            record.registered_at.isoformat(),
            None,
        ),
    )
    await log_event(
        db,
        AuditAction.REGISTRATION_CREATED,
        actor_id=author.user_id,
        target_id=submission_id,
        target_type="registration",
        details={"registration_number": record.registration_number},
    )
    await db.commit()
    return record


async def mark_registration_paid(
    db: aiosqlite.Connection,
    admin: AuthContext,
    submission_id: str,
) -> Registration:
    record = await get_registration(db, submission_id)
    if record is None:
        raise NotFound("Registration not found")
    if record.payment_status == PaymentStatus.PAID:
        raise Conflict("Registration is already marked as paid")

    record.payment_status = PaymentStatus.PAID
    record.paid_at = datetime.now(timezone.utc)
    await db.execute(
        "UPDATE registrations SET payment_status = ?, paid_at = ? WHERE submission_id = ?",
        (record.payment_status.value, record.paid_at.isoformat(), submission_id),
    )
    await log_event(
        db,
        AuditAction.REGISTRATION_PAID,
        actor_id=admin.user_id,
        target_id=submission_id,
        target_type="registration",
    )
    await db.commit()
    return record


# ---------------------------------------------------------------------------
# Certificate & publication
# ---------------------------------------------------------------------------

async def issue_certificate(
    db: aiosqlite.Connection,
    notifier: Notifier,
    admin: AuthContext,
    submission_id: str,
) -> FinalAcceptance:
    """Needs a paid registration and an approved copyright form."""
    record = await get_acceptance(db, submission_id)
    if record.acceptance_status != AcceptanceStatus.ACCEPTED:
        raise Conflict(f"Certificate already issued (status '{record.acceptance_status.value}')")

    problems: list[str] = []
    registration = await get_registration(db, submission_id)
    if registration is None or registration.payment_status != PaymentStatus.PAID:
        problems.append("Registration payment has not been received")
    copyright_record = await get_copyright(db, submission_id)
    if copyright_record is None or copyright_record.status != CopyrightStatus.APPROVED:
        problems.append("Copyright form has not been approved")
    if problems:
        raise ValidationFailed("Certificate cannot be issued yet", problems)

    record.acceptance_status = AcceptanceStatus.CERTIFICATE_GENERATED
    await save_acceptance(db, record)
    await log_event(
        db,
        AuditAction.CERTIFICATE_ISSUED,
        actor_id=admin.user_id,
        target_id=submission_id,
        target_type="submission",
        details={"certificate_number": record.certificate_number},
    )
    await db.commit()

    notifier.send(
        "certificate_issued",
        record.author_email,
        paper_id=submission_id,
        title=record.title,
        certificate_number=record.certificate_number,
    )
    return record


async def publish_paper(
    db: aiosqlite.Connection,
    notifier: Notifier,
    admin: AuthContext,
    submission_id: str,
) -> FinalAcceptance:
    paper = await get_submission(db, submission_id)
    transition(paper.status, Event.PUBLISH)
    record = await get_acceptance(db, submission_id)
    if record.acceptance_status != AcceptanceStatus.CERTIFICATE_GENERATED:
        raise ValidationFailed("The certificate must be issued before the paper is published")

    step = await apply_event(db, paper, Event.PUBLISH, admin.user_id)
    record.acceptance_status = AcceptanceStatus.PUBLISHED
    await save_acceptance(db, record)
    await save_submission(db, paper)
    await db.commit()
    logger.info("paper %s published", submission_id)

    await notify_transition(db, notifier, paper, step, reviewer_ids=[])
    return record
