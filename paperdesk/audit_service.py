"""Audit service — append-only event log for every significant action.

Every submission, status change, review and decision is recorded here.
Events are immutable once written.  ``log_event`` does not commit: it joins
the caller's transaction so the event lands together with the change it
describes.
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from paperdesk.database import from_json, to_json
from paperdesk.models import AuditAction, AuditEvent


async def log_event(
    db: aiosqlite.Connection,
    action: AuditAction,
    actor_id: str = "",
    target_id: str = "",
    target_type: str = "",
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Write an immutable audit event inside the current transaction."""
    event = AuditEvent(
        action=action,
        actor_id=actor_id,
        target_id=target_id,
        target_type=target_type,
        details=details or {},
    )
    await db.execute(
        """
        INSERT INTO audit_events (event_id, action, actor_id, target_id, target_type, details, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.event_id,
            event.action.value,
            event.actor_id,
            event.target_id,
            event.target_type,
            to_json(event.details),
            event.timestamp.isoformat(),
        ),
    )
    return event


def _row_to_event(row: aiosqlite.Row) -> dict[str, Any]:
    d = dict(row)
    d["details"] = from_json(d.get("details", "{}"))
    return d


async def get_events_for_target(
    db: aiosqlite.Connection,
    target_id: str,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Retrieve audit events for a given target (submission, user, ...), oldest first."""
    async with db.execute(
        """
        SELECT * FROM audit_events
        WHERE target_id = ?
        ORDER BY timestamp ASC, rowid ASC
        LIMIT ?
        """,
        (target_id, limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def get_recent_events(
    db: aiosqlite.Connection,
    action: AuditAction | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Retrieve recent audit events, optionally filtered by action type."""
    if action:
        query = "SELECT * FROM audit_events WHERE action = ? ORDER BY timestamp DESC LIMIT ?"
        params: tuple = (action.value, limit)
    else:
        query = "SELECT * FROM audit_events ORDER BY timestamp DESC LIMIT ?"
        params = (limit,)

    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]
