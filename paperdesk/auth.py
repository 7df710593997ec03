"""Authentication and authorization helpers for REST API endpoints.

Passwords are stored as salted PBKDF2 hashes.  Sessions are stateless
HS256 bearer tokens carrying ``{email, user_id, username, role}``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt
from fastapi import Depends, Header, Request

from paperdesk.config import Config
from paperdesk.errors import AuthenticationFailed, Forbidden
from paperdesk.models import Role, User

_HASH_SCHEME = "pbkdf2_sha256"
_HASH_ITERATIONS = 200_000


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

def hash_password(password: str, *, iterations: int = _HASH_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), iterations)
    return f"{_HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, expected = stored.split("$")
        rounds = int(iterations)
        salt_bytes = bytes.fromhex(salt)
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt_bytes, rounds)
    return hmac.compare_digest(digest.hex(), expected)


def generate_temporary_password(length: int = 12) -> str:
    """Random password handed to staff accounts created by an admin or editor."""
    return secrets.token_urlsafe(length)[:length]


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    email: str
    username: str
    role: Role

    def has_role(self, *roles: Role) -> bool:
        # Admins pass every role check.
        return self.role == Role.ADMIN or self.role in roles


def issue_token(user: User, config: Config, *, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "email": user.email,
        "user_id": user.user_id,
        "username": user.username,
        "role": user.role.value,
        "iat": issued,
        "exp": issued + timedelta(hours=config.security.token_ttl_hours),
    }
    return jwt.encode(payload, config.security.jwt_secret, algorithm=config.security.jwt_algorithm)


def decode_token(token: str, config: Config) -> AuthContext:
    """Validate a bearer token; expired and malformed tokens fail differently."""
    try:
        payload = jwt.decode(
            token,
            config.security.jwt_secret,
            algorithms=[config.security.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationFailed("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationFailed("Invalid token") from exc

    try:
        return AuthContext(
            user_id=str(payload["user_id"]),
            email=str(payload["email"]),
            username=str(payload.get("username", "")),
            role=Role(payload["role"]),
        )
    except (KeyError, ValueError) as exc:
        raise AuthenticationFailed("Invalid token") from exc


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

async def get_auth_context(
    request: Request,
    authorization: str | None = Header(default=None),
) -> AuthContext:
    """Resolve the caller from the ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise AuthenticationFailed("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationFailed("Invalid token")
    return decode_token(token.strip(), request.app.state.config)


def require_roles(*roles: Role) -> Callable[..., AuthContext]:
    """FastAPI dependency enforcing that the caller holds one of ``roles``."""
    needed = tuple(roles)

    async def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if ctx.has_role(*needed):
            return ctx
        allowed = ", ".join(r.value for r in needed)
        raise Forbidden(f"Access denied: requires role {allowed}")

    return _dependency
