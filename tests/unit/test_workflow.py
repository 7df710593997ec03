"""End-to-end editorial workflow against an in-memory database."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import aiosqlite
import pytest

from paperdesk.acceptance_service import (
    acceptance_statistics,
    get_registration,
    issue_certificate,
    list_accepted,
    mark_registration_paid,
    publish_paper,
    register_paper,
)
from paperdesk.audit_service import get_events_for_target
from paperdesk.auth import AuthContext
from paperdesk.copyright_service import (
    authorize_download,
    get_or_create_copyright,
    post_message,
    review_copyright,
    upload_form,
)
from paperdesk.dashboard_service import admin_dashboard, editor_dashboard, reviewer_dashboard
from paperdesk.database import SCHEMA_SQL
from paperdesk.decision_service import (
    accept_paper,
    conditionally_accept,
    get_rejected,
    make_decision,
    reject_paper,
    rejection_statistics,
    request_revision,
)
from paperdesk.errors import Conflict, Forbidden, NotFound, ValidationFailed
from paperdesk.lifecycle import IllegalTransition
from paperdesk.message_service import get_thread, reviewer_threads, send_message
from paperdesk.models import (
    AcceptanceStatus,
    AssignmentStatus,
    CopyrightStatus,
    PaymentStatus,
    Recommendation,
    RejectionReason,
    ReviewSubmission,
    Role,
    StoredFile,
    SubmissionCreate,
    SubmissionStatus,
    SubmissionUpdate,
    Thread,
    User,
    UserCreate,
)
from paperdesk.reminder_service import non_responding_reviewers, send_bulk_reminders, send_reminder
from paperdesk.review_service import get_reviews_for_submission, upsert_review
from paperdesk.submission_service import (
    assign_editor,
    assign_reviewers,
    edit_submission,
    get_revision,
    get_submission,
    list_reviewer_assignments,
    reassign_editor,
    remove_reviewer,
    replace_pdf,
    respond_to_assignment,
    submit_paper,
    submit_revision,
)
from paperdesk.user_service import create_staff_account, ensure_admin, register_user


async def _memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.commit()
    return db


def _ctx(user: User) -> AuthContext:
    return AuthContext(user.user_id, user.email, user.username, user.role)


def _pdf(name: str = "paper") -> StoredFile:
    return StoredFile(url=f"/api/files/{name}.pdf", file_id=f"{name}.pdf", filename=f"{name}.pdf")


def _review(rating: int, recommendation=Recommendation.ACCEPT, **extra) -> ReviewSubmission:
    return ReviewSubmission(
        overall_rating=rating,
        recommendation=recommendation,
        comments=f"Rated {rating}",
        **extra,
    )


async def _people(db, notifier) -> SimpleNamespace:
    admin = _ctx(await ensure_admin(db, "admin@conf.org", "admin-pass"))
    editor, _ = await create_staff_account(db, notifier, admin, "editor@conf.org", Role.EDITOR)
    other, _ = await create_staff_account(db, notifier, admin, "other@conf.org", Role.EDITOR)
    editor_ctx = _ctx(editor)
    reviewers = []
    for n in range(3):
        user, _ = await create_staff_account(db, notifier, editor_ctx, f"rev{n}@conf.org", Role.REVIEWER)
        reviewers.append(_ctx(user))
    author = await register_user(
        db, UserCreate(email="ada@uni.edu", password="secret1", username="Ada")
    )
    return SimpleNamespace(
        admin=admin,
        editor=editor_ctx,
        other_editor=_ctx(other),
        reviewers=reviewers,
        author=_ctx(author),
    )


async def _submitted(db, notifier, people, category: str = "Machine Learning"):
    return await submit_paper(
        db,
        notifier,
        people.author,
        SubmissionCreate(title="Graph Learning", author_name="Ada Lovelace", category=category),
        _pdf(),
    )


async def _under_review(db, notifier, config, people, count: int = 3):
    paper = await _submitted(db, notifier, people)
    await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
    await assign_reviewers(
        db,
        notifier,
        config,
        people.editor,
        paper.submission_id,
        [r.user_id for r in people.reviewers[:count]],
    )
    for reviewer in people.reviewers[:count]:
        await respond_to_assignment(db, notifier, reviewer, paper.submission_id, accept=True)
    return await get_submission(db, paper.submission_id)


async def _reviewed(db, notifier, config, people, ratings=(4, 5, 3)):
    paper = await _under_review(db, notifier, config, people, count=len(ratings))
    for reviewer, rating in zip(people.reviewers, ratings):
        await upsert_review(db, notifier, reviewer, paper.submission_id, _review(rating))
    return await get_submission(db, paper.submission_id)


# ---------------------------------------------------------------------------
# Submission & assignment
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submission_gets_category_id_and_confirmation(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        first = await _submitted(db, notifier, people)
        second = await _submitted(db, notifier, people)
        assert (first.submission_id, second.submission_id) == ("MA001", "MA002")
        assert first.status == SubmissionStatus.SUBMITTED
        assert first.versions[0].version == 1
        assert outbox.to("ada@uni.edu")[0].kind == "submission_confirmation"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_assign_editor_requires_editor_role(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        with pytest.raises(ValidationFailed):
            await assign_editor(db, notifier, people.admin, paper.submission_id, people.author.user_id)

        paper = await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
        assert paper.status == SubmissionStatus.EDITOR_ASSIGNED
        assert "editor_assigned" in [m.kind for m in outbox.to("editor@conf.org")]

        with pytest.raises(IllegalTransition):
            await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_reassign_editor_keeps_status(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=1)
        paper = await reassign_editor(
            db, notifier, people.admin, paper.submission_id, people.other_editor.user_id
        )
        assert paper.status == SubmissionStatus.UNDER_REVIEW
        assert paper.assigned_editor_id == people.other_editor.user_id
        with pytest.raises(Conflict):
            await reassign_editor(
                db, notifier, people.admin, paper.submission_id, people.other_editor.user_id
            )
        with pytest.raises(Forbidden):
            await remove_reviewer(
                db, notifier, people.editor, paper.submission_id, people.reviewers[0].user_id
            )
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_reviewer_invitations_and_duplicates(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
        paper = await assign_reviewers(
            db, notifier, config, people.editor, paper.submission_id,
            [people.reviewers[0].user_id], deadline_days=7,
        )
        assert paper.status == SubmissionStatus.UNDER_REVIEW
        assert paper.assignments[0].status == AssignmentStatus.PENDING
        assert "reviewer_invitation" in [m.kind for m in outbox.to("rev0@conf.org")]

        with pytest.raises(Conflict):
            await assign_reviewers(
                db, notifier, config, people.editor, paper.submission_id,
                [people.reviewers[0].user_id],
            )
        with pytest.raises(ValidationFailed):
            await assign_reviewers(
                db, notifier, config, people.editor, paper.submission_id,
                [people.author.user_id],
            )
        with pytest.raises(ValidationFailed):
            await assign_reviewers(
                db, notifier, config, people.editor, paper.submission_id,
                [people.reviewers[1].user_id], deadline="2000-01-01",
            )

        items = await list_reviewer_assignments(db, people.reviewers[0].user_id)
        assert items[0]["submission_id"] == paper.submission_id
        assert items[0]["assignment_status"] == "Pending"
        assert items[0]["reviewed_this_round"] is False
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_other_editor_cannot_assign_reviewers(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
        with pytest.raises(Forbidden):
            await assign_reviewers(
                db, notifier, config, people.other_editor, paper.submission_id,
                [people.reviewers[0].user_id],
            )
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Review round
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_round_completes_when_every_reviewer_reports(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people)
        for reviewer, rating in zip(people.reviewers[:2], (4, 5)):
            await upsert_review(db, notifier, reviewer, paper.submission_id, _review(rating))
        paper = await get_submission(db, paper.submission_id)
        assert paper.status == SubmissionStatus.UNDER_REVIEW

        await upsert_review(db, notifier, people.reviewers[2], paper.submission_id, _review(3))
        paper = await get_submission(db, paper.submission_id)
        assert paper.status == SubmissionStatus.REVIEW_RECEIVED
        assert "reviews_complete" in [m.kind for m in outbox.to("editor@conf.org")]
        assert all(a.status == AssignmentStatus.SUBMITTED for a in paper.assignments)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_second_review_replaces_first(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=2)
        reviewer = people.reviewers[0]

        first, created = await upsert_review(db, notifier, reviewer, paper.submission_id, _review(2))
        assert created is True
        second, created = await upsert_review(
            db, notifier, reviewer, paper.submission_id,
            _review(5, Recommendation.CONDITIONALLY_ACCEPT, strengths="Clear writing"),
        )
        assert created is False

        stored = await get_reviews_for_submission(db, paper.submission_id)
        assert len(stored) == 1
        assert stored[0].review_id == first.review_id == second.review_id
        assert stored[0].overall_rating == 5
        assert stored[0].recommendation == Recommendation.CONDITIONALLY_ACCEPT
        assert stored[0].strengths == "Clear writing"
        assert stored[0].created_at == first.created_at
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_sole_reviewer_can_amend_after_round_closes(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=1)
        reviewer = people.reviewers[0]

        await upsert_review(db, notifier, reviewer, paper.submission_id, _review(2))
        assert (await get_submission(db, paper.submission_id)).status == SubmissionStatus.REVIEW_RECEIVED

        _, created = await upsert_review(db, notifier, reviewer, paper.submission_id, _review(5))
        assert created is False

        stored = await get_reviews_for_submission(db, paper.submission_id)
        assert [r.overall_rating for r in stored] == [5]
        assert (await get_submission(db, paper.submission_id)).status == SubmissionStatus.REVIEW_RECEIVED
        kinds = [m.kind for m in outbox.to("editor@conf.org")]
        assert kinds.count("reviews_complete") == 1
        assert kinds.count("review_submitted") == 2

        events = await get_events_for_target(db, paper.submission_id)
        changes = [e["details"]["to"] for e in events if e["action"] == "status_changed"]
        assert changes.count("Review Received") == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_pending_invitation_holds_round_open(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
        await assign_reviewers(
            db, notifier, config, people.editor, paper.submission_id,
            [people.reviewers[0].user_id, people.reviewers[1].user_id],
        )
        await respond_to_assignment(db, notifier, people.reviewers[0], paper.submission_id, accept=True)
        await upsert_review(db, notifier, people.reviewers[0], paper.submission_id, _review(4))
        assert (await get_submission(db, paper.submission_id)).status == SubmissionStatus.UNDER_REVIEW

        with pytest.raises(ValidationFailed):
            await respond_to_assignment(
                db, notifier, people.reviewers[1], paper.submission_id, accept=False
            )
        await respond_to_assignment(
            db, notifier, people.reviewers[1], paper.submission_id, accept=False, reason="Conflict of interest"
        )
        paper = await get_submission(db, paper.submission_id)
        assert paper.status == SubmissionStatus.REVIEW_RECEIVED
        assert paper.assignment_for(people.reviewers[1].user_id).decline_reason == "Conflict of interest"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_review_requires_accepted_assignment(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        await assign_editor(db, notifier, people.admin, paper.submission_id, people.editor.user_id)
        await assign_reviewers(
            db, notifier, config, people.editor, paper.submission_id, [people.reviewers[0].user_id]
        )
        with pytest.raises(Forbidden):
            await upsert_review(db, notifier, people.reviewers[0], paper.submission_id, _review(4))
        with pytest.raises(Forbidden):
            await upsert_review(db, notifier, people.reviewers[1], paper.submission_id, _review(4))
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_remove_reviewer_rules(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=2)
        await upsert_review(db, notifier, people.reviewers[0], paper.submission_id, _review(4))

        with pytest.raises(ValidationFailed):
            await remove_reviewer(
                db, notifier, people.editor, paper.submission_id, people.reviewers[0].user_id
            )
        paper = await remove_reviewer(
            db, notifier, people.editor, paper.submission_id, people.reviewers[1].user_id
        )
        assert [a.reviewer_id for a in paper.assignments] == [people.reviewers[0].user_id]
        # The remaining reviewer has already reported, so the round is complete.
        assert paper.status == SubmissionStatus.REVIEW_RECEIVED
        assert "reviewer_removed" in [m.kind for m in outbox.to("rev1@conf.org")]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_last_active_reviewer_cannot_be_removed(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=1)
        with pytest.raises(ValidationFailed):
            await remove_reviewer(
                db, notifier, people.editor, paper.submission_id, people.reviewers[0].user_id
            )
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_accept_freezes_snapshot(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people)
        record = await accept_paper(db, notifier, config, people.editor, paper.submission_id)

        assert record.total_reviewers == 3
        assert record.average_rating == 4.0
        assert record.certificate_number.startswith("ICMBNT-2026-")
        assert record.acceptance_status == AcceptanceStatus.ACCEPTED

        paper = await get_submission(db, paper.submission_id)
        assert paper.status == SubmissionStatus.ACCEPTED
        assert paper.final_decision == Recommendation.ACCEPT
        assert "paper_accepted" in [m.kind for m in outbox.to("ada@uni.edu")]

        high = await list_accepted(db, min_rating=4.0)
        assert [r.submission_id for r in high] == [paper.submission_id]
        assert await list_accepted(db, min_rating=4.5) == []
        stats = await acceptance_statistics(db)
        assert stats["total_accepted"] == 1
        assert stats["by_category"][0]["category"] == "Machine Learning"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_decision_before_reviews_is_illegal(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=1)
        with pytest.raises(IllegalTransition):
            await accept_paper(db, notifier, config, people.editor, paper.submission_id)
        with pytest.raises(IllegalTransition):
            await request_revision(db, notifier, config, people.editor, paper.submission_id)
        assert (await get_submission(db, paper.submission_id)).status == SubmissionStatus.UNDER_REVIEW
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_revision_requires_minimum_reviews(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(4,))
        strict = config.model_copy(
            update={"workflow": config.workflow.model_copy(update={"min_reviews_for_revision": 3})}
        )
        with pytest.raises(ValidationFailed) as excinfo:
            await request_revision(db, notifier, strict, people.editor, paper.submission_id)
        assert "At least 3 reviews" in excinfo.value.message
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_revision_loop_then_reject(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(2, 3))
        sid = paper.submission_id

        revision = await request_revision(
            db, notifier, config, people.editor, sid, message="Tighten section 3", deadline_days=10
        )
        assert revision.revision_round == 1
        assert len(revision.reviewer_comments) == 2
        assert (await get_submission(db, sid)).status == SubmissionStatus.REVISION_REQUIRED
        assert "revision_required" in [m.kind for m in outbox.to("ada@uni.edu")]

        paper, revision = await submit_revision(
            db, notifier, people.author, sid, _pdf("revised"), "Addressed all comments"
        )
        assert paper.status == SubmissionStatus.REVISED_SUBMITTED
        assert paper.revision_count == 1
        assert paper.review_round == 2
        assert [v.version for v in paper.versions] == [1, 2]
        assert paper.pdf.file_id == "revised.pdf"
        assert all(a.status == AssignmentStatus.ACCEPTED for a in paper.assignments)
        assert "rereview_request" in [m.kind for m in outbox.to("rev0@conf.org")]

        with pytest.raises(IllegalTransition):
            await submit_revision(db, notifier, people.author, sid, _pdf("again"))

        for reviewer, rating in zip(people.reviewers[:2], (2, 2)):
            await upsert_review(
                db, notifier, reviewer, sid, _review(rating, Recommendation.REJECT)
            )
        assert (await get_submission(db, sid)).status == SubmissionStatus.REVIEW_RECEIVED
        current = await get_reviews_for_submission(db, sid, review_round=2)
        assert len(current) == 2

        with pytest.raises(ValidationFailed):
            await reject_paper(
                db, notifier, config, people.editor, sid,
                reason=RejectionReason.QUALITY_ISSUES, comments="  ",
            )
        record = await reject_paper(
            db, notifier, config, people.editor, sid,
            reason=RejectionReason.METHODOLOGICAL_FLAWS, comments="Evaluation is not convincing",
        )
        assert [r.round for r in record.reviews_by_round] == [1, 2]
        assert all(len(r.reviews) == 2 for r in record.reviews_by_round)
        assert record.average_rating == 2.0

        paper = await get_submission(db, sid)
        assert paper.status == SubmissionStatus.REJECTED
        assert paper.final_decision == Recommendation.REJECT
        assert (await get_rejected(db, sid)).rejection_reason == RejectionReason.METHODOLOGICAL_FLAWS
        stats = await rejection_statistics(db)
        assert stats["Methodological Flaws"] == 1
        assert (await get_revision(db, sid)).revision_status.value == "Rejected"
        assert "paper_rejected" in [m.kind for m in outbox.to("ada@uni.edu")]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_conditional_accept_then_accept(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(4,))
        paper = await conditionally_accept(
            db, notifier, people.editor, paper.submission_id,
            comments="Minor fixes", corrections="Fix figure 2",
        )
        assert paper.status == SubmissionStatus.CONDITIONALLY_ACCEPT
        assert paper.final_decision == Recommendation.CONDITIONALLY_ACCEPT
        assert paper.editor_corrections == "Fix figure 2"

        record = await make_decision(
            db, notifier, config, people.editor, paper.submission_id, Recommendation.ACCEPT
        )
        assert record.submission_id == paper.submission_id
        assert (await get_submission(db, paper.submission_id)).status == SubmissionStatus.ACCEPTED
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_other_editor_cannot_decide(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(4,))
        with pytest.raises(Forbidden):
            await accept_paper(db, notifier, config, people.other_editor, paper.submission_id)
        # Admins may act on any paper.
        await accept_paper(db, notifier, config, people.admin, paper.submission_id)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Registration, copyright, certificate, publication
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_post_acceptance_flow(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(5,))
        sid = paper.submission_id
        await accept_paper(db, notifier, config, people.editor, sid)

        with pytest.raises(ValidationFailed) as excinfo:
            await publish_paper(db, notifier, people.admin, sid)
        assert "certificate" in excinfo.value.message

        registration = await register_paper(db, config, people.author, sid)
        assert registration.registration_number == f"REG-2026-{sid}"
        assert registration.payment_status == PaymentStatus.PENDING
        with pytest.raises(Conflict):
            await register_paper(db, config, people.author, sid)

        with pytest.raises(ValidationFailed) as excinfo:
            await issue_certificate(db, notifier, people.admin, sid)
        assert len(excinfo.value.errors) == 2

        await mark_registration_paid(db, people.admin, sid)
        assert (await get_registration(db, sid)).payment_status == PaymentStatus.PAID

        record = await get_or_create_copyright(db, people.author, sid)
        assert record.status == CopyrightStatus.PENDING
        await post_message(db, people.author, sid, "Which form version should I use?")
        await upload_form(db, people.author, sid, _pdf("copyright"))
        record = await review_copyright(
            db, notifier, people.admin, sid, CopyrightStatus.APPROVED, "Looks good"
        )
        assert record.status == CopyrightStatus.APPROVED
        assert [m.sender for m in record.messages] == ["Author", "Admin"]
        assert record.messages[-1].message == "Review: Approved. Comment: Looks good"
        with pytest.raises(ValidationFailed):
            await upload_form(db, people.author, sid, _pdf("copyright2"))

        acceptance = await issue_certificate(db, notifier, people.admin, sid)
        assert acceptance.acceptance_status == AcceptanceStatus.CERTIFICATE_GENERATED

        acceptance = await publish_paper(db, notifier, people.admin, sid)
        assert acceptance.acceptance_status == AcceptanceStatus.PUBLISHED
        paper = await get_submission(db, sid)
        assert paper.status == SubmissionStatus.PUBLISHED
        assert paper.final_decision == Recommendation.ACCEPT

        kinds = [m.kind for m in outbox.to("ada@uni.edu")]
        for kind in ("copyright_reviewed", "certificate_issued", "paper_published"):
            assert kind in kinds

        events = await get_events_for_target(db, sid)
        changes = [e["details"]["to"] for e in events if e["action"] == "status_changed"]
        assert changes == [
            "Editor Assigned",
            "Under Review",
            "Review Received",
            "Accepted",
            "Published",
        ]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_copyright_only_for_accepted_papers(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        with pytest.raises(ValidationFailed):
            await get_or_create_copyright(db, people.author, paper.submission_id)
        with pytest.raises(ValidationFailed):
            await register_paper(db, config, people.author, paper.submission_id)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Pre-review edits and downloads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_author_edits_until_reviewers_are_invited(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        sid = paper.submission_id

        paper = await edit_submission(
            db, people.author, sid, SubmissionUpdate(title="  Graph Learning at Scale ", category="Databases")
        )
        assert paper.title == "Graph Learning at Scale"
        assert paper.category == "Databases"
        assert paper.submission_id == "MA001"

        with pytest.raises(ValidationFailed, match="No changes supplied"):
            await edit_submission(db, people.author, sid, SubmissionUpdate())
        with pytest.raises(ValidationFailed) as excinfo:
            await edit_submission(db, people.author, sid, SubmissionUpdate(title=" "))
        assert excinfo.value.errors == ["title: must not be blank"]

        await assign_editor(db, notifier, people.admin, sid, people.editor.user_id)
        paper = await replace_pdf(db, people.author, sid, _pdf("second"))
        assert [v.version for v in paper.versions] == [1, 2]
        assert paper.pdf.file_id == "second.pdf"
        assert paper.versions[0].pdf.file_id == "paper.pdf"
        assert paper.status == SubmissionStatus.EDITOR_ASSIGNED

        eve = _ctx(await register_user(db, UserCreate(email="eve@uni.edu", password="secret1")))
        with pytest.raises(Forbidden):
            await replace_pdf(db, eve, sid, _pdf("stolen"))

        await assign_reviewers(
            db, notifier, config, people.editor, sid, [people.reviewers[0].user_id]
        )
        with pytest.raises(IllegalTransition):
            await edit_submission(db, people.author, sid, SubmissionUpdate(title="Too late"))
        with pytest.raises(IllegalTransition):
            await replace_pdf(db, people.author, sid, _pdf("third"))

        stored = await get_submission(db, sid)
        assert stored.title == "Graph Learning at Scale"
        assert len(stored.versions) == 2
        actions = [e["action"] for e in await get_events_for_target(db, sid)]
        assert actions.count("submission_edited") == 1
        assert actions.count("pdf_replaced") == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_downloads_follow_record_access(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _reviewed(db, notifier, config, people, ratings=(5,))
        sid = paper.submission_id

        await authorize_download(db, people.author, "paper.pdf")
        await authorize_download(db, people.reviewers[0], "paper.pdf")
        await authorize_download(db, people.editor, "paper.pdf")
        with pytest.raises(Forbidden):
            await authorize_download(db, people.reviewers[1], "paper.pdf")
        with pytest.raises(Forbidden):
            await authorize_download(db, people.other_editor, "paper.pdf")

        await accept_paper(db, notifier, config, people.editor, sid)
        await upload_form(db, people.author, sid, _pdf("copyright"))
        await authorize_download(db, people.author, "copyright.pdf")
        await authorize_download(db, people.admin, "copyright.pdf")
        with pytest.raises(Forbidden):
            await authorize_download(db, people.editor, "copyright.pdf")

        for missing in ("nothing.pdf", "%", "_aper.pdf"):
            with pytest.raises(NotFound):
                await authorize_download(db, people.admin, missing)
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Message threads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_author_and_reviewer_threads_stay_apart(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=2)
        sid = paper.submission_id
        first, second = people.reviewers[:2]

        await send_message(db, notifier, people.author, sid, "May I add an appendix?", thread=Thread.AUTHOR)
        await send_message(db, notifier, people.editor, sid, "Yes.", thread=Thread.AUTHOR)
        await send_message(
            db, notifier, people.editor, sid, "Please check the proofs.",
            thread=Thread.REVIEWER, reviewer_id=first.user_id,
        )
        await send_message(db, notifier, first, sid, "Will do.", thread=Thread.REVIEWER)

        author_thread = await get_thread(db, people.author, sid, thread=Thread.AUTHOR)
        assert [m.body for m in author_thread] == ["May I add an appendix?", "Yes."]
        assert [m.sender_role for m in author_thread] == [Role.AUTHOR, Role.EDITOR]

        mine = await get_thread(db, first, sid, thread=Thread.REVIEWER)
        assert [m.body for m in mine] == ["Please check the proofs.", "Will do."]
        assert await get_thread(db, second, sid, thread=Thread.REVIEWER) == []
        seen_by_editor = await get_thread(
            db, people.editor, sid, thread=Thread.REVIEWER, reviewer_id=first.user_id
        )
        assert len(seen_by_editor) == 2

        with pytest.raises(Forbidden):
            await get_thread(db, first, sid, thread=Thread.AUTHOR)
        with pytest.raises(Forbidden):
            await get_thread(db, people.author, sid, thread=Thread.REVIEWER)
        with pytest.raises(Forbidden):
            await get_thread(db, people.other_editor, sid, thread=Thread.AUTHOR)
        with pytest.raises(Forbidden):
            await send_message(db, notifier, people.reviewers[2], sid, "Hello", thread=Thread.REVIEWER)
        with pytest.raises(NotFound):
            await get_thread(db, people.editor, sid, thread=Thread.REVIEWER)
        with pytest.raises(ValidationFailed):
            await send_message(db, notifier, people.author, sid, "   ", thread=Thread.AUTHOR)

        to_editor = [m for m in outbox.to("editor@conf.org") if m.kind == "new_message"]
        assert len(to_editor) == 2
        assert "Ada" in to_editor[0].body
        to_reviewer = [m for m in outbox.to("rev0@conf.org") if m.kind == "new_message"]
        assert "The editorial office" in to_reviewer[0].body
        assert not [m for m in outbox.to("rev1@conf.org") if m.kind == "new_message"]

        summary = await reviewer_threads(db, first.user_id)
        assert summary == [
            {
                "submission_id": sid,
                "title": "Graph Learning",
                "message_count": 2,
                "last_message_at": mine[-1].created_at.isoformat(),
            }
        ]
        assert await reviewer_threads(db, second.user_id) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_message_before_editor_assignment_is_kept(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _submitted(db, notifier, people)
        await send_message(db, notifier, people.author, paper.submission_id, "Any news?", thread=Thread.AUTHOR)
        thread = await get_thread(db, people.admin, paper.submission_id, thread=Thread.AUTHOR)
        assert [m.body for m in thread] == ["Any news?"]
        assert "new_message" not in outbox.kinds()
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Reminders and dashboards
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_non_responding_reviewers_and_reminders(config, notifier, outbox):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        paper = await _under_review(db, notifier, config, people, count=2)
        sid = paper.submission_id
        done, late = people.reviewers[:2]
        await upsert_review(db, notifier, done, sid, _review(4))

        items = await non_responding_reviewers(db, people.editor)
        assert [i["reviewer_id"] for i in items] == [late.user_id]
        assert items[0]["overdue"] is False
        assert items[0]["reminder_count"] == 0
        assert await non_responding_reviewers(db, people.other_editor) == []
        assert [i["reviewer_id"] for i in await non_responding_reviewers(db, people.admin)] == [late.user_id]

        later = datetime.now(timezone.utc) + timedelta(days=config.workflow.review_deadline_days + 3)
        items = await non_responding_reviewers(db, people.editor, now=later)
        assert items[0]["overdue"] is True
        assert items[0]["days_until_deadline"] < 0

        assignment = await send_reminder(db, notifier, people.editor, sid, late.user_id, now=later)
        assert assignment.reminder_count == 1
        assert assignment.last_reminder_at == later
        reminder = [m for m in outbox.to("rev1@conf.org") if m.kind == "reviewer_reminder"][0]
        assert "passed" in reminder.body
        assert (await get_submission(db, sid)).status == SubmissionStatus.UNDER_REVIEW

        with pytest.raises(Forbidden):
            await send_reminder(db, notifier, people.other_editor, sid, late.user_id)
        with pytest.raises(ValidationFailed):
            await send_reminder(db, notifier, people.editor, sid, done.user_id)
        with pytest.raises(NotFound):
            await send_reminder(db, notifier, people.editor, sid, people.reviewers[2].user_id)

        results = await send_bulk_reminders(
            db,
            notifier,
            people.editor,
            [(sid, late.user_id), (sid, done.user_id), ("ZZ999", late.user_id)],
        )
        assert results["sent"] == [{"submission_id": sid, "reviewer_id": late.user_id, "reminder_count": 2}]
        assert [f["reason"] for f in results["failed"]] == [
            "This reviewer has no outstanding review for the paper",
            "Paper not found",
        ]
        stored = (await get_submission(db, sid)).assignment_for(late.user_id)
        assert stored.reminder_count == 2

        events = await get_events_for_target(db, sid)
        assert [e["details"]["reminder_count"] for e in events if e["action"] == "reviewer_reminded"] == [1, 2]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_role_dashboards(config, notifier):
    db = await _memory_db()
    try:
        people = await _people(db, notifier)
        reviewed = await _reviewed(db, notifier, config, people, ratings=(4,))
        waiting = await _submitted(db, notifier, people)
        await assign_editor(db, notifier, people.admin, waiting.submission_id, people.editor.user_id)
        await _submitted(db, notifier, people)

        editor = await editor_dashboard(db, people.editor.user_id)
        assert editor["total_assigned"] == 2
        assert editor["open"] == 2
        assert editor["needs_reviewers"] == 1
        assert editor["awaiting_decision"] == 1
        assert editor["papers_by_status"]["Review Received"] == 1
        assert {p["submission_id"] for p in editor["papers_requiring_action"]} == {
            reviewed.submission_id,
            waiting.submission_id,
        }

        reviewer = await reviewer_dashboard(db, people.reviewers[0].user_id)
        assert reviewer["total_assigned"] == 1
        assert reviewer["reviews_submitted"] == 1
        assert reviewer["reviews_pending"] == 0
        assert reviewer["reviews_by_recommendation"]["Accept"] == 1

        admin = await admin_dashboard(db)
        assert admin["total_papers"] == 3
        assert admin["unassigned"] == 1
        assert admin["users_by_role"] == {"Author": 1, "Reviewer": 3, "Editor": 2, "Admin": 1}
        assert admin["total_users"] == 7
    finally:
        await db.close()
