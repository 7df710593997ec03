"""Notification rendering, dispatch and failure isolation."""

from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite
import pytest

from paperdesk.auth import AuthContext
from paperdesk.database import SCHEMA_SQL
from paperdesk.lifecycle import Effect
from paperdesk.models import Submission, SubmissionCreate, StoredFile, UserCreate
from paperdesk.notifications import Notifier, OutboxTransport, dispatch
from paperdesk.submission_service import get_submission, submit_paper
from paperdesk.user_service import register_user


class ExplodingTransport:
    def __init__(self) -> None:
        self.attempts = 0

    def deliver(self, message) -> None:
        self.attempts += 1
        raise ConnectionError("smtp down")


async def _memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.commit()
    return db


def _paper() -> Submission:
    return Submission(
        submission_id="MA001",
        title="Graph Learning",
        author_id="u-1",
        author_name="Ada",
        author_email="ada@uni.edu",
        category="Machine Learning",
    )


def test_render_includes_conference_and_paper(config):
    notifier = Notifier(OutboxTransport(), config)
    subject, body = notifier.render("submission_confirmation", paper=_paper())
    assert "MA001" in subject
    assert "Graph Learning" in body
    assert "ICMBNT 2026" in body


def test_deadline_rendered_as_date(config):
    outbox = OutboxTransport()
    notifier = Notifier(outbox, config)
    due = datetime(2026, 11, 30, 23, 59, tzinfo=timezone.utc)
    assert notifier.send("reviewer_invitation", "rev@conf.org", paper=_paper(), deadline=due)
    assert "2026-11-30" in outbox.messages[0].body


def test_missing_recipient_is_skipped(config):
    outbox = OutboxTransport()
    notifier = Notifier(outbox, config)
    assert notifier.send("submission_confirmation", None, paper=_paper()) is False
    assert outbox.messages == []


def test_render_error_is_logged_not_raised(config, caplog):
    notifier = Notifier(OutboxTransport(), config)
    # paper is required by the template
    assert notifier.send("submission_confirmation", "ada@uni.edu") is False
    assert "submission_confirmation" in caplog.text


def test_dispatch_routes_by_audience(config):
    outbox = OutboxTransport()
    notifier = Notifier(outbox, config)
    dispatch(
        notifier,
        (Effect.NOTIFY_REVIEWERS_INVITED, Effect.NOTIFY_EDITOR_ASSIGNED, Effect.CREATE_REVISION),
        _paper(),
        editor_email="ed@conf.org",
        reviewer_emails=["r1@conf.org", "r2@conf.org"],
        deadline=datetime(2026, 12, 1, tzinfo=timezone.utc),
    )
    assert sorted(m.to for m in outbox.messages) == ["ed@conf.org", "r1@conf.org", "r2@conf.org"]
    assert outbox.to("ed@conf.org")[0].kind == "editor_assigned"
    assert set(outbox.kinds()) == {"reviewer_invitation", "editor_assigned"}


@pytest.mark.parametrize(
    "days,phrase",
    [(3, "due by 2026-11-30 (3 day(s) left)"), (-2, "passed 2 day(s) ago")],
)
def test_reminder_wording_follows_deadline(config, days, phrase):
    notifier = Notifier(OutboxTransport(), config)
    subject, body = notifier.render(
        "reviewer_reminder",
        paper=_paper(),
        reviewer_name="Grace",
        reminder_number=2,
        deadline=datetime(2026, 11, 30, tzinfo=timezone.utc),
        days_remaining=days,
    )
    assert subject == "Reminder: Review Pending - MA001"
    assert "reminder 2" in body
    assert phrase in body


def test_new_message_quotes_body(config):
    notifier = Notifier(OutboxTransport(), config)
    subject, body = notifier.render("new_message", paper=_paper(), sender="Ada", body="Is a supplement allowed?")
    assert "MA001" in subject
    assert body.startswith("Ada sent you a message")
    assert "Is a supplement allowed?" in body

@pytest.mark.asyncio
async def test_transport_failure_does_not_fail_submission(config):
    transport = ExplodingTransport()
    notifier = Notifier(transport, config)
    db = await _memory_db()
    try:
        user = await register_user(db, UserCreate(email="ada@uni.edu", password="secret1"))
        author = AuthContext(user.user_id, user.email, user.username, user.role)
        pdf = StoredFile(url="/api/files/papers-1.pdf", file_id="papers-1.pdf", filename="p.pdf")
        paper = await submit_paper(
            db,
            notifier,
            author,
            SubmissionCreate(title="Graph Learning", author_name="Ada", category="Machine Learning"),
            pdf,
        )
        assert transport.attempts == 1
        stored = await get_submission(db, paper.submission_id)
        assert stored.submission_id == "MA001"
        assert stored.versions[0].pdf.file_id == "papers-1.pdf"
    finally:
        await db.close()
