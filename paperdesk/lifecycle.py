"""Submission lifecycle — the one place that decides which status changes are legal.

Every service that moves a submission calls :func:`transition` with the
current status and the triggering event.  The result names the next status
and the side effects the caller must carry out (snapshots, notifications).
Anything not in the table raises :class:`IllegalTransition`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from paperdesk.errors import ValidationFailed
from paperdesk.models import SubmissionStatus

S = SubmissionStatus


class Event(str, Enum):
    EDIT_SUBMISSION = "edit"
    ASSIGN_EDITOR = "assign_editor"
    REASSIGN_EDITOR = "reassign_editor"
    ASSIGN_REVIEWERS = "assign_reviewers"
    ALL_REVIEWS_RECEIVED = "all_reviews_received"
    REQUEST_REVISION = "request_revision"
    SUBMIT_REVISION = "submit_revision"
    REREVIEW_COMPLETE = "rereview_complete"
    CONDITIONALLY_ACCEPT = "conditionally_accept"
    ACCEPT = "accept"
    REJECT = "reject"
    PUBLISH = "publish"


class Effect(str, Enum):
    NOTIFY_EDITOR_ASSIGNED = "notify_editor_assigned"
    NOTIFY_REVIEWERS_INVITED = "notify_reviewers_invited"
    NOTIFY_EDITOR_REVIEWS_COMPLETE = "notify_editor_reviews_complete"
    NOTIFY_AUTHOR_REVISION = "notify_author_revision"
    NOTIFY_EDITOR_REVISION_SUBMITTED = "notify_editor_revision_submitted"
    NOTIFY_REVIEWERS_REREVIEW = "notify_reviewers_rereview"
    NOTIFY_AUTHOR_CONDITIONAL = "notify_author_conditional"
    NOTIFY_AUTHOR_ACCEPTED = "notify_author_accepted"
    NOTIFY_AUTHOR_REJECTED = "notify_author_rejected"
    NOTIFY_AUTHOR_PUBLISHED = "notify_author_published"
    CREATE_REVISION = "create_revision"
    CREATE_ACCEPTANCE_SNAPSHOT = "create_acceptance_snapshot"
    CREATE_REJECTION_SNAPSHOT = "create_rejection_snapshot"


class IllegalTransition(ValidationFailed):
    """Raised for an event that is not allowed from the current status."""

    def __init__(self, current: SubmissionStatus, event: Event):
        super().__init__(
            f"Cannot {event.value.replace('_', ' ')} a paper with status '{current.value}'"
        )
        self.current = current
        self.event = event


@dataclass(frozen=True, slots=True)
class Transition:
    source: SubmissionStatus
    event: Event
    target: SubmissionStatus
    effects: tuple[Effect, ...] = ()


_NON_TERMINAL = (
    S.SUBMITTED,
    S.EDITOR_ASSIGNED,
    S.UNDER_REVIEW,
    S.REVIEW_RECEIVED,
    S.REVISION_REQUIRED,
    S.REVISED_SUBMITTED,
    S.CONDITIONALLY_ACCEPT,
)


def _build_table() -> dict[tuple[SubmissionStatus, Event], Transition]:
    rows: list[Transition] = [
        Transition(S.SUBMITTED, Event.ASSIGN_EDITOR, S.EDITOR_ASSIGNED,
                   (Effect.NOTIFY_EDITOR_ASSIGNED,)),
        Transition(S.EDITOR_ASSIGNED, Event.ASSIGN_REVIEWERS, S.UNDER_REVIEW,
                   (Effect.NOTIFY_REVIEWERS_INVITED,)),
        Transition(S.UNDER_REVIEW, Event.ASSIGN_REVIEWERS, S.UNDER_REVIEW,
                   (Effect.NOTIFY_REVIEWERS_INVITED,)),
        Transition(S.UNDER_REVIEW, Event.ALL_REVIEWS_RECEIVED, S.REVIEW_RECEIVED,
                   (Effect.NOTIFY_EDITOR_REVIEWS_COMPLETE,)),
        Transition(S.REVIEW_RECEIVED, Event.REQUEST_REVISION, S.REVISION_REQUIRED,
                   (Effect.CREATE_REVISION, Effect.NOTIFY_AUTHOR_REVISION)),
        Transition(S.REVISION_REQUIRED, Event.SUBMIT_REVISION, S.REVISED_SUBMITTED,
                   (Effect.NOTIFY_EDITOR_REVISION_SUBMITTED, Effect.NOTIFY_REVIEWERS_REREVIEW)),
        Transition(S.REVISED_SUBMITTED, Event.REREVIEW_COMPLETE, S.REVIEW_RECEIVED,
                   (Effect.NOTIFY_EDITOR_REVIEWS_COMPLETE,)),
        Transition(S.REVIEW_RECEIVED, Event.CONDITIONALLY_ACCEPT, S.CONDITIONALLY_ACCEPT,
                   (Effect.NOTIFY_AUTHOR_CONDITIONAL,)),
        Transition(S.ACCEPTED, Event.PUBLISH, S.PUBLISHED,
                   (Effect.NOTIFY_AUTHOR_PUBLISHED,)),
    ]
    for source in (S.REVIEW_RECEIVED, S.CONDITIONALLY_ACCEPT):
        rows.append(Transition(source, Event.ACCEPT, S.ACCEPTED,
                               (Effect.CREATE_ACCEPTANCE_SNAPSHOT, Effect.NOTIFY_AUTHOR_ACCEPTED)))
        rows.append(Transition(source, Event.REJECT, S.REJECTED,
                               (Effect.CREATE_REJECTION_SNAPSHOT, Effect.NOTIFY_AUTHOR_REJECTED)))
    # Authors may still edit or re-upload until reviewers are invited.
    for source in (S.SUBMITTED, S.EDITOR_ASSIGNED):
        rows.append(Transition(source, Event.EDIT_SUBMISSION, source))
    for source in _NON_TERMINAL:
        rows.append(Transition(source, Event.REASSIGN_EDITOR, source,
                               (Effect.NOTIFY_EDITOR_ASSIGNED,)))
    return {(t.source, t.event): t for t in rows}


TRANSITIONS: dict[tuple[SubmissionStatus, Event], Transition] = _build_table()


def transition(current: SubmissionStatus, event: Event) -> Transition:
    """Return the transition for ``event`` from ``current`` or raise IllegalTransition."""
    found = TRANSITIONS.get((SubmissionStatus(current), Event(event)))
    if found is None:
        raise IllegalTransition(SubmissionStatus(current), Event(event))
    return found


def can_transition(current: SubmissionStatus, event: Event) -> bool:
    return (SubmissionStatus(current), Event(event)) in TRANSITIONS


def allowed_events(current: SubmissionStatus) -> list[Event]:
    """Events that may fire from ``current``, in declaration order."""
    return [event for (source, event) in TRANSITIONS if source == current]


def is_terminal(status: SubmissionStatus) -> bool:
    return status in (S.REJECTED, S.PUBLISHED)
