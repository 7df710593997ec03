"""Notification delivery — Jinja2-rendered messages over a pluggable transport.

A notification never fails the operation that triggered it: rendering and
transport errors are logged and swallowed.  The default transport only logs;
tests use :class:`OutboxTransport` to inspect what would have been sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from jinja2 import DictLoader, Environment, StrictUndefined

from paperdesk.config import Config, settings
from paperdesk.lifecycle import Effect
from paperdesk.models import Submission

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Templates: kind -> (subject, body)
# ---------------------------------------------------------------------------

_TEMPLATES: dict[str, tuple[str, str]] = {
    "submission_confirmation": (
        "Paper Submission Confirmation - {{ paper.submission_id }}",
        """Dear {{ paper.author_name }},

Your paper "{{ paper.title }}" has been received by {{ conference }}.
Submission ID: {{ paper.submission_id }}
Category: {{ paper.category }}

You will be notified as it moves through review.
""",
    ),
    "editor_assigned": (
        "Paper Assigned for Review - {{ paper.submission_id }}",
        """You have been assigned as editor for "{{ paper.title }}" ({{ paper.submission_id }}).
Current status: {{ paper.status.value }}.
""",
    ),
    "reviewer_invitation": (
        "Paper Review Invitation - {{ paper.submission_id }} - {{ conference }}",
        """You have been invited to review "{{ paper.title }}" ({{ paper.submission_id }}).
Please accept or decline the assignment. Review deadline: {{ deadline | date }}.
""",
    ),
    "assignment_accepted": (
        "Assignment Accepted - {{ paper.submission_id }}",
        """Reviewer {{ reviewer }} accepted the review assignment for "{{ paper.title }}".
""",
    ),
    "assignment_declined": (
        "Reviewer Declined Assignment - {{ paper.submission_id }}",
        """Reviewer {{ reviewer }} declined the review assignment for "{{ paper.title }}".
Reason: {{ reason or "not given" }}
""",
    ),
    "reviewer_removed": (
        "Reviewer Removed - {{ paper.title }}",
        """You have been removed as reviewer for "{{ paper.title }}" ({{ paper.submission_id }}).
No further action is needed.
""",
    ),
    "review_submitted": (
        "Review Submitted - {{ paper.submission_id }}",
        """Reviewer {{ reviewer }} submitted a review for "{{ paper.title }}".
Overall rating: {{ rating }}/5. Recommendation: {{ recommendation }}.
""",
    ),
    "reviews_complete": (
        "All Reviews Received - {{ paper.submission_id }}",
        """All assigned reviewers have submitted their reviews for "{{ paper.title }}".
The paper is ready for an editorial decision.
""",
    ),
    "revision_required": (
        "Revision Required - Paper {{ paper.submission_id }}",
        """Dear {{ paper.author_name }},

The editor has requested a revision of "{{ paper.title }}".
{% if message %}
Editor's message:
{{ message }}
{% endif %}
Please upload the revised paper by {{ deadline | date }}.
""",
    ),
    "revision_submitted": (
        "Revised Paper Received - {{ paper.submission_id }}",
        """The author has submitted revision {{ paper.revision_count }} of "{{ paper.title }}".
""",
    ),
    "rereview_request": (
        "Re-Review Request - Revised Paper - {{ paper.submission_id }}",
        """A revised version of "{{ paper.title }}" is ready for re-review (round {{ paper.review_round }}).
""",
    ),
    "conditionally_accepted": (
        "Paper Review Decision - {{ paper.submission_id }}",
        """Dear {{ paper.author_name }},

Your paper "{{ paper.title }}" has been conditionally accepted.
{% if comments %}
Editor's comments:
{{ comments }}
{% endif %}
""",
    ),
    "paper_accepted": (
        "Paper Accepted - {{ conference }}",
        """Dear {{ paper.author_name }},

Congratulations! Your paper "{{ paper.title }}" has been accepted for {{ conference }}.
Certificate number: {{ certificate_number }}

Please complete registration and the copyright form.
""",
    ),
    "paper_rejected": (
        "Paper Rejection - {{ paper.submission_id }}",
        """Dear {{ paper.author_name }},

We regret to inform you that "{{ paper.title }}" was not accepted.
Reason: {{ reason }}
{% if comments %}
{{ comments }}
{% endif %}
""",
    ),
    "paper_published": (
        "Paper Published - {{ paper.submission_id }}",
        """Dear {{ paper.author_name }},

Your paper "{{ paper.title }}" has been published in the {{ conference }} proceedings.
""",
    ),
    "staff_account": (
        "Your {{ role }} Account Credentials - {{ conference }}",
        """An {{ role }} account has been created for you.

Email: {{ email }}
Temporary password: {{ password }}

Please change your password after the first login.
""",
    ),
    "copyright_reviewed": (
        "Copyright Form {{ status }} - {{ paper_id }}",
        """Your copyright form for "{{ title }}" was {{ status | lower }}.
{% if comment %}
Comment: {{ comment }}
{% endif %}
""",
    ),
    "certificate_issued": (
        "Certificate Issued - {{ paper_id }}",
        """The acceptance certificate {{ certificate_number }} for "{{ title }}" has been issued.
""",
    ),
    "reviewer_reminder": (
        "Reminder: Review Pending - {{ paper.submission_id }}",
        """Dear {{ reviewer_name }},

This is reminder {{ reminder_number }} about your review of "{{ paper.title }}".
{% if days_remaining < 0 %}
The review deadline ({{ deadline | date }}) passed {{ -days_remaining }} day(s) ago.
{% else %}
The review is due by {{ deadline | date }} ({{ days_remaining }} day(s) left).
{% endif %}
""",
    ),
    "new_message": (
        "New Message - Paper {{ paper.submission_id }}",
        """{{ sender }} sent you a message about "{{ paper.title }}":

{{ body }}
""",
    ),
}


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _build_environment() -> Environment:
    env = Environment(
        loader=DictLoader(
            {
                **{f"{kind}.subject": subject for kind, (subject, _) in _TEMPLATES.items()},
                **{f"{kind}.body": body for kind, (_, body) in _TEMPLATES.items()},
            }
        ),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["date"] = _format_date
    return env


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class Message:
    kind: str
    to: str
    subject: str
    body: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Transport(Protocol):
    def deliver(self, message: Message) -> None: ...


class LoggingTransport:
    """Default transport: writes each message to the log instead of sending it."""

    def deliver(self, message: Message) -> None:
        logger.info("notification %s to=%s subject=%r", message.kind, message.to, message.subject)


class OutboxTransport:
    """Keeps messages in memory."""

    def __init__(self) -> None:
        self.messages: list[Message] = []

    def deliver(self, message: Message) -> None:
        self.messages.append(message)

    def to(self, address: str) -> list[Message]:
        return [m for m in self.messages if m.to == address]

    def kinds(self) -> list[str]:
        return [m.kind for m in self.messages]


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

class Notifier:
    """Render a template and hand it to the transport; failures are logged only."""

    def __init__(self, transport: Transport | None = None, config: Config | None = None):
        self.transport = transport or LoggingTransport()
        self.config = config or settings
        self.env = _build_environment()

    @property
    def conference(self) -> str:
        return f"{self.config.workflow.conference_name} {self.config.workflow.conference_year}"

    def render(self, kind: str, **context: Any) -> tuple[str, str]:
        ctx = {"conference": self.conference, **context}
        subject = self.env.get_template(f"{kind}.subject").render(ctx).strip()
        body = self.env.get_template(f"{kind}.body").render(ctx)
        return subject, body

    def send(self, kind: str, to: str | None, **context: Any) -> bool:
        """Deliver one notification; returns False when nothing was delivered."""
        if not to:
            logger.debug("notification %s skipped: no recipient", kind)
            return False
        try:
            subject, body = self.render(kind, **context)
            self.transport.deliver(Message(kind=kind, to=to, subject=subject, body=body))
        except Exception:
            logger.exception("notification %s to %s failed", kind, to)
            return False
        return True

    def send_many(self, kind: str, recipients: Iterable[str], **context: Any) -> int:
        return sum(1 for to in recipients if self.send(kind, to, **context))


_EFFECT_TEMPLATES: dict[Effect, tuple[str, str]] = {
    Effect.NOTIFY_EDITOR_ASSIGNED: ("editor_assigned", "editor"),
    Effect.NOTIFY_REVIEWERS_INVITED: ("reviewer_invitation", "reviewers"),
    Effect.NOTIFY_EDITOR_REVIEWS_COMPLETE: ("reviews_complete", "editor"),
    Effect.NOTIFY_AUTHOR_REVISION: ("revision_required", "author"),
    Effect.NOTIFY_EDITOR_REVISION_SUBMITTED: ("revision_submitted", "editor"),
    Effect.NOTIFY_REVIEWERS_REREVIEW: ("rereview_request", "reviewers"),
    Effect.NOTIFY_AUTHOR_CONDITIONAL: ("conditionally_accepted", "author"),
    Effect.NOTIFY_AUTHOR_ACCEPTED: ("paper_accepted", "author"),
    Effect.NOTIFY_AUTHOR_REJECTED: ("paper_rejected", "author"),
    Effect.NOTIFY_AUTHOR_PUBLISHED: ("paper_published", "author"),
}


def dispatch(
    notifier: Notifier,
    effects: Iterable[Effect],
    paper: Submission,
    *,
    editor_email: str | None = None,
    reviewer_emails: Iterable[str] = (),
    **context: Any,
) -> None:
    """Send the notifications named by a transition's effects.

    Snapshot effects are carried out by the services and ignored here.
    """
    reviewers = list(reviewer_emails)
    for effect in effects:
        mapping = _EFFECT_TEMPLATES.get(effect)
        if mapping is None:
            continue
        kind, audience = mapping
        if audience == "author":
            notifier.send(kind, paper.author_email, paper=paper, **context)
        elif audience == "editor":
            notifier.send(kind, editor_email, paper=paper, **context)
        else:
            notifier.send_many(kind, reviewers, paper=paper, **context)
