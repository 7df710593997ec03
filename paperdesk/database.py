"""Storage layer — SQLite for all workflow records.

Provides:
- async SQLite connection via aiosqlite
- schema creation
- submission ID generator (<PREFIX><NNN>, e.g. MA001)
- JSON helpers for TEXT columns
"""

from __future__ import annotations

import json
import re
from typing import Any

import aiosqlite

from paperdesk.config import Config, settings
from paperdesk.errors import ValidationFailed

# ---------------------------------------------------------------------------
# Submission ID Generator
# ---------------------------------------------------------------------------


def category_prefix(category: str) -> str:
    """First two letters of the first word of the category, upper-cased."""
    words = category.split()
    if not words:
        raise ValidationFailed("Category is required")
    return words[0][:2].upper()


async def generate_submission_id(db: aiosqlite.Connection, category: str) -> str:
    """Generate the next submission ID for a category: MA001, MA002, ...

    The highest existing ``<PREFIX>NNN`` is incremented; if that ID is somehow
    taken the sequence is walked forward until a free one is found.
    """
    prefix = category_prefix(category)
    pattern = re.compile(rf"^{re.escape(prefix)}(\d{{3}})$")

    async with db.execute(
        "SELECT submission_id FROM submissions WHERE submission_id LIKE ?",
        (f"{prefix}%",),
    ) as cursor:
        rows = await cursor.fetchall()

    highest = 0
    for row in rows:
        match = pattern.match(row[0])
        if match:
            highest = max(highest, int(match.group(1)))

    seq = highest + 1
    while True:
        candidate = f"{prefix}{seq:03d}"
        async with db.execute(
            "SELECT 1 FROM submissions WHERE submission_id = ?", (candidate,)
        ) as cursor:
            if await cursor.fetchone() is None:
                return candidate
        seq += 1


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Accounts
CREATE TABLE IF NOT EXISTS users (
    user_id       TEXT PRIMARY KEY,
    username      TEXT NOT NULL,
    email         TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role          TEXT NOT NULL DEFAULT 'Author',
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);

-- Submissions (papers)
CREATE TABLE IF NOT EXISTS submissions (
    submission_id      TEXT PRIMARY KEY,
    title              TEXT NOT NULL,
    author_id          TEXT NOT NULL,
    author_name        TEXT NOT NULL,
    author_email       TEXT NOT NULL,
    category           TEXT NOT NULL,
    topic              TEXT NOT NULL DEFAULT '',
    abstract           TEXT NOT NULL DEFAULT '',
    pdf                TEXT,
    status             TEXT NOT NULL DEFAULT 'Submitted',
    assigned_editor_id TEXT,
    revision_count     INTEGER NOT NULL DEFAULT 0,
    editor_comments    TEXT NOT NULL DEFAULT '',
    editor_corrections TEXT NOT NULL DEFAULT '',
    versions           TEXT NOT NULL DEFAULT '[]',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    FOREIGN KEY (author_id) REFERENCES users(user_id),
    FOREIGN KEY (assigned_editor_id) REFERENCES users(user_id)
);

CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions(status);
CREATE INDEX IF NOT EXISTS idx_submissions_author ON submissions(author_id);
CREATE INDEX IF NOT EXISTS idx_submissions_editor ON submissions(assigned_editor_id);

-- Reviewer assignments
CREATE TABLE IF NOT EXISTS review_assignments (
    submission_id    TEXT NOT NULL,
    reviewer_id      TEXT NOT NULL,
    deadline         TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'Pending',
    assigned_at      TEXT NOT NULL,
    responded_at     TEXT,
    decline_reason   TEXT NOT NULL DEFAULT '',
    reminder_count   INTEGER NOT NULL DEFAULT 0,
    last_reminder_at TEXT,
    PRIMARY KEY (submission_id, reviewer_id),
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id),
    FOREIGN KEY (reviewer_id) REFERENCES users(user_id)
);

CREATE INDEX IF NOT EXISTS idx_assignments_reviewer ON review_assignments(reviewer_id);

-- Reviews (one per submission/reviewer pair)
CREATE TABLE IF NOT EXISTS reviews (
    review_id             TEXT PRIMARY KEY,
    submission_id         TEXT NOT NULL,
    reviewer_id           TEXT NOT NULL,
    review_round          INTEGER NOT NULL DEFAULT 1,
    overall_rating        INTEGER NOT NULL,
    novelty_rating        INTEGER,
    quality_rating        INTEGER,
    clarity_rating        INTEGER,
    recommendation        TEXT NOT NULL,
    comments              TEXT NOT NULL DEFAULT '',
    strengths             TEXT NOT NULL DEFAULT '',
    weaknesses            TEXT NOT NULL DEFAULT '',
    comments_to_author    TEXT NOT NULL DEFAULT '',
    confidential_comments TEXT NOT NULL DEFAULT '',
    status                TEXT NOT NULL DEFAULT 'Submitted',
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id),
    FOREIGN KEY (reviewer_id) REFERENCES users(user_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_reviews_key ON reviews(submission_id, reviewer_id);
CREATE INDEX IF NOT EXISTS idx_reviews_reviewer ON reviews(reviewer_id);

-- Active revision context (one per submission)
CREATE TABLE IF NOT EXISTS revisions (
    submission_id     TEXT PRIMARY KEY,
    revision_round    INTEGER NOT NULL DEFAULT 1,
    revision_status   TEXT NOT NULL DEFAULT 'Pending',
    revision_message  TEXT NOT NULL DEFAULT '',
    deadline          TEXT NOT NULL,
    editor_id         TEXT NOT NULL DEFAULT '',
    reviewer_comments TEXT NOT NULL DEFAULT '[]',
    revised_pdf       TEXT,
    author_response   TEXT NOT NULL DEFAULT '',
    requested_at      TEXT NOT NULL,
    resubmitted_at    TEXT,
    updated_at        TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

-- Terminal snapshots
CREATE TABLE IF NOT EXISTS final_acceptances (
    submission_id      TEXT PRIMARY KEY,
    data               TEXT NOT NULL,
    category           TEXT NOT NULL,
    author_email       TEXT NOT NULL,
    acceptance_status  TEXT NOT NULL DEFAULT 'Accepted',
    average_rating     REAL NOT NULL DEFAULT 0.0,
    certificate_number TEXT NOT NULL UNIQUE,
    accepted_at        TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

CREATE INDEX IF NOT EXISTS idx_acceptances_category ON final_acceptances(category);
CREATE INDEX IF NOT EXISTS idx_acceptances_author ON final_acceptances(author_email);

CREATE TABLE IF NOT EXISTS rejected_papers (
    submission_id    TEXT PRIMARY KEY,
    data             TEXT NOT NULL,
    category         TEXT NOT NULL,
    rejection_reason TEXT NOT NULL,
    rejected_at      TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

-- Post-acceptance records
CREATE TABLE IF NOT EXISTS registrations (
    submission_id       TEXT PRIMARY KEY,
    registration_number TEXT NOT NULL UNIQUE,
    author_email        TEXT NOT NULL,
    payment_status      TEXT NOT NULL DEFAULT 'Pending',
    registered_at       TEXT NOT NULL,
    paid_at             TEXT,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

CREATE TABLE IF NOT EXISTS copyrights (
    submission_id TEXT PRIMARY KEY,
    copyright_id  TEXT NOT NULL UNIQUE,
    author_email  TEXT NOT NULL,
    author_name   TEXT NOT NULL,
    title         TEXT NOT NULL,
    form          TEXT,
    status        TEXT NOT NULL DEFAULT 'Pending',
    submitted_at  TEXT,
    messages      TEXT NOT NULL DEFAULT '[]',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

CREATE INDEX IF NOT EXISTS idx_copyrights_author ON copyrights(author_email);

-- Editor threads: one with the author, one per reviewer (reviewer_id set)
CREATE TABLE IF NOT EXISTS messages (
    message_id    TEXT PRIMARY KEY,
    submission_id TEXT NOT NULL,
    thread        TEXT NOT NULL,
    reviewer_id   TEXT NOT NULL DEFAULT '',
    sender_id     TEXT NOT NULL,
    sender_role   TEXT NOT NULL,
    sender_name   TEXT NOT NULL DEFAULT '',
    body          TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    FOREIGN KEY (submission_id) REFERENCES submissions(submission_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(submission_id, thread, reviewer_id);

-- Audit events (append-only)
CREATE TABLE IF NOT EXISTS audit_events (
    event_id    TEXT PRIMARY KEY,
    action      TEXT NOT NULL,
    actor_id    TEXT NOT NULL DEFAULT '',
    target_id   TEXT NOT NULL DEFAULT '',
    target_type TEXT NOT NULL DEFAULT '',
    details     TEXT NOT NULL DEFAULT '{}',
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_events(action);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_events(actor_id);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_events(target_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_events(timestamp);
"""


async def get_db(config: Config | None = None) -> aiosqlite.Connection:
    """Open the SQLite database and ensure the schema exists."""
    cfg = config or settings
    cfg.ensure_dirs()
    db = await aiosqlite.connect(str(cfg.db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await db.execute("PRAGMA temp_store = MEMORY;")
    await db.executescript(SCHEMA_SQL)
    await db.commit()
    return db


# ---------------------------------------------------------------------------
# JSON helpers for SQLite columns that store serialised data
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models and other types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def like_contains(text: str) -> str:
    """LIKE pattern matching ``text`` literally anywhere; use with ``ESCAPE '\\'``."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
