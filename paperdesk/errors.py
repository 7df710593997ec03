"""Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``paperdesk.api`` maps them onto JSON responses of the
form ``{"success": false, "message": ...}`` with the matching status code.
"""

from __future__ import annotations


class PaperdeskError(Exception):
    """Base class for workflow errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def payload(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationFailed(PaperdeskError):
    """Bad input; carries one message per offending field."""

    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def payload(self) -> dict:
        body = super().payload()
        if self.errors:
            body["errors"] = self.errors
        return body


class NotFound(PaperdeskError):
    status_code = 404


class Forbidden(PaperdeskError):
    status_code = 403


class AuthenticationFailed(PaperdeskError):
    status_code = 401


class Conflict(ValidationFailed):
    """Duplicate resource (already registered, already assigned, ...)."""
