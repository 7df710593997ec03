"""User service — registration, login, staff accounts and lookups."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import aiosqlite

from paperdesk.audit_service import log_event
from paperdesk.auth import AuthContext, generate_temporary_password, hash_password, verify_password
from paperdesk.errors import AuthenticationFailed, Conflict, Forbidden, NotFound
from paperdesk.models import AuditAction, Role, User, UserCreate
from paperdesk.notifications import Notifier

logger = logging.getLogger(__name__)


def _row_to_user(row: dict[str, Any] | aiosqlite.Row) -> User:
    d = dict(row)
    d.pop("password_hash", None)
    return User(**d)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


async def _insert_user(db: aiosqlite.Connection, user: User, password: str) -> None:
    try:
        await db.execute(
            """
            INSERT INTO users (user_id, username, email, password_hash, role, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user.user_id,
                user.username,
                user.email,
                hash_password(password),
                user.role.value,
                user.created_at.isoformat(),
            ),
        )
    except aiosqlite.IntegrityError as exc:
        raise Conflict("User already exists") from exc


async def register_user(db: aiosqlite.Connection, payload: UserCreate) -> User:
    """Self-registration.  New accounts are always authors."""
    email = _normalize_email(payload.email)
    if await get_user_by_email(db, email) is not None:
        raise Conflict("User already exists")

    user = User(
        username=(payload.username or "").strip() or email.split("@")[0],
        email=email,
        role=Role.AUTHOR,
    )
    await _insert_user(db, user, payload.password)
    await log_event(
        db,
        AuditAction.USER_REGISTERED,
        actor_id=user.user_id,
        target_id=user.user_id,
        target_type="user",
        details={"email": user.email},
    )
    await db.commit()
    logger.info("registered user %s", user.email)
    return user


async def authenticate(db: aiosqlite.Connection, email: str, password: str) -> User:
    """Check credentials; unknown email and wrong password fail the same way."""
    async with db.execute(
        "SELECT * FROM users WHERE email = ?", (_normalize_email(email),)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None or not verify_password(password, row["password_hash"]):
        raise AuthenticationFailed("Invalid email or password")
    return _row_to_user(row)


# Which role may create which staff account.
_STAFF_CREATORS: dict[Role, tuple[Role, ...]] = {
    Role.EDITOR: (Role.ADMIN,),
    Role.REVIEWER: (Role.EDITOR, Role.ADMIN),
}


async def create_staff_account(
    db: aiosqlite.Connection,
    notifier: Notifier,
    actor: AuthContext,
    email: str,
    role: Role,
    username: str | None = None,
) -> tuple[User, str]:
    """Create an editor (by an admin) or reviewer (by an editor) with a temporary password.

    The password is mailed to the new account holder and also returned so the
    creating user can pass it on if mail delivery is not configured.
    """
    creators = _STAFF_CREATORS.get(role)
    if creators is None:
        raise Forbidden(f"Accounts with role {role.value} cannot be created here")
    if actor.role not in creators:
        raise Forbidden(f"Access denied: {actor.role.value} cannot create {role.value} accounts")

    address = _normalize_email(email)
    if await get_user_by_email(db, address) is not None:
        raise Conflict("User already exists")

    password = generate_temporary_password()
    user = User(
        username=(username or "").strip() or address.split("@")[0],
        email=address,
        role=role,
    )
    await _insert_user(db, user, password)
    await log_event(
        db,
        AuditAction.STAFF_CREATED,
        actor_id=actor.user_id,
        target_id=user.user_id,
        target_type="user",
        details={"email": user.email, "role": role.value},
    )
    await db.commit()

    notifier.send("staff_account", user.email, role=role.value, email=user.email, password=password)
    return user, password


async def ensure_admin(db: aiosqlite.Connection, email: str, password: str) -> User:
    """Create the admin account, or promote and re-key an existing one."""
    address = _normalize_email(email)
    existing = await get_user_by_email(db, address)
    if existing is None:
        user = User(username=address.split("@")[0], email=address, role=Role.ADMIN)
        await _insert_user(db, user, password)
    else:
        await db.execute(
            "UPDATE users SET role = ?, password_hash = ? WHERE user_id = ?",
            (Role.ADMIN.value, hash_password(password), existing.user_id),
        )
        user = existing.model_copy(update={"role": Role.ADMIN})
    await log_event(
        db,
        AuditAction.STAFF_CREATED,
        actor_id="system",
        target_id=user.user_id,
        target_type="user",
        details={"email": user.email, "role": Role.ADMIN.value},
    )
    await db.commit()
    return user


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_user(db: aiosqlite.Connection, user_id: str) -> User:
    async with db.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFound("User not found")
    return _row_to_user(row)


async def get_user_by_email(db: aiosqlite.Connection, email: str) -> User | None:
    async with db.execute(
        "SELECT * FROM users WHERE email = ?", (_normalize_email(email),)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_user(row) if row else None


async def get_users(db: aiosqlite.Connection, user_ids: Iterable[str]) -> dict[str, User]:
    """Bulk lookup keyed by user_id; unknown IDs are simply absent."""
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    async with db.execute(
        f"SELECT * FROM users WHERE user_id IN ({placeholders})", ids
    ) as cursor:
        rows = await cursor.fetchall()
    return {row["user_id"]: _row_to_user(row) for row in rows}


async def list_users(db: aiosqlite.Connection, role: Role | None = None) -> list[User]:
    if role:
        query = "SELECT * FROM users WHERE role = ? ORDER BY created_at DESC"
        params: tuple = (role.value,)
    else:
        query = "SELECT * FROM users ORDER BY created_at DESC"
        params = ()
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_user(row) for row in rows]
