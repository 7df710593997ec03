"""REST API — FastAPI application factory and endpoints.

Routes only translate HTTP into service calls; every response uses the
``{"success": bool, "message"?: str, <resource>?: ...}`` envelope.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, AsyncIterator, TypeVar

import aiosqlite
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from paperdesk import acceptance_service, copyright_service, dashboard_service, decision_service
from paperdesk import message_service, reminder_service, review_service, submission_service, user_service
from paperdesk.audit_service import get_events_for_target, get_recent_events
from paperdesk.auth import AuthContext, get_auth_context, issue_token, require_roles
from paperdesk.config import Config, settings
from paperdesk.database import get_db
from paperdesk.errors import PaperdeskError, ValidationFailed
from paperdesk.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from paperdesk.models import (
    AuditAction,
    CopyrightStatus,
    Recommendation,
    RejectionReason,
    ReviewSubmission,
    Role,
    SubmissionCreate,
    SubmissionUpdate,
    SubmissionStatus,
    Thread,
    UserCreate,
)
from paperdesk.notifications import Notifier
from paperdesk.storage import LocalObjectStore, store_pdf
from paperdesk.submission_service import public_view

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_connection(request: Request) -> AsyncIterator[aiosqlite.Connection]:
    """One connection per request, closed when the response is done."""
    db = await get_db(request.app.state.config)
    try:
        yield db
    finally:
        await db.close()


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_store(request: Request) -> LocalObjectStore:
    return request.app.state.store


def _parse(model: type[M], **data: Any) -> M:
    """Build a model from form fields, reporting problems as a 400."""
    try:
        return model(**data)
    except ValidationError as exc:
        raise ValidationFailed("Validation failed", _error_messages(exc.errors())) from exc


def _error_messages(errors: list[dict[str, Any]]) -> list[str]:
    messages = []
    for err in errors:
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return messages


async def _read_pdf(
    upload: UploadFile,
    store: LocalObjectStore,
    config: Config,
    folder: str,
):
    data = await upload.read()
    return await store_pdf(
        store,
        config,
        filename=upload.filename,
        content_type=upload.content_type,
        data=data,
        folder=folder,
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class StaffCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    username: str | None = Field(default=None, max_length=120)


class EditorAssignRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    editor_id: str = Field(min_length=1)


class ReviewerAssignRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    reviewer_ids: list[str] = Field(min_length=1, max_length=50)
    deadline: str | None = None
    deadline_days: int | None = Field(default=None, ge=1, le=365)


class DeclineRequest(BaseModel):
    reason: str = Field(default="", max_length=4_000)


class DecisionRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    decision: Recommendation
    comments: str = Field(default="", max_length=40_000)
    corrections: str = Field(default="", max_length=40_000)
    rejection_reason: RejectionReason | None = None
    deadline: str | None = None
    deadline_days: int | None = Field(default=None, ge=1, le=365)


class RevisionRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    message: str = Field(default="", max_length=40_000)
    deadline: str | None = None
    deadline_days: int | None = Field(default=None, ge=1, le=365)


class AcceptRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    notes: str = Field(default="", max_length=10_000)


class RejectRequest(BaseModel):
    reason: RejectionReason
    comments: str = Field(min_length=1, max_length=40_000)


class CopyrightMessageRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=10_000)


class CopyrightReviewRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    status: CopyrightStatus
    comment: str = Field(default="", max_length=10_000)


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=10_000)
    reviewer_id: str = ""


class ReminderRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    reviewer_id: str = Field(min_length=1)


class BulkReminderRequest(BaseModel):
    reminders: list[ReminderRequest] = Field(min_length=1, max_length=200)


# ---------------------------------------------------------------------------
# Auth endpoints
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")

_author = require_roles(Role.AUTHOR)
_editor = require_roles(Role.EDITOR)
_reviewer = require_roles(Role.REVIEWER)
_admin = require_roles(Role.ADMIN)
_editor_or_reviewer = require_roles(Role.EDITOR, Role.REVIEWER)


@router.post("/auth/register", tags=["auth"], status_code=201)
async def api_register(
    req: UserCreate,
    db: aiosqlite.Connection = Depends(get_connection),
    config: Config = Depends(get_config),
):
    user = await user_service.register_user(db, req)
    return {
        "success": True,
        "message": "User registered successfully",
        "token": issue_token(user, config),
        "user": user.model_dump(mode="json"),
    }


@router.post("/auth/login", tags=["auth"])
async def api_login(
    req: LoginRequest,
    db: aiosqlite.Connection = Depends(get_connection),
    config: Config = Depends(get_config),
):
    user = await user_service.authenticate(db, req.email, req.password)
    return {
        "success": True,
        "message": "Login successful",
        "token": issue_token(user, config),
        "user": user.model_dump(mode="json"),
    }


@router.get("/auth/me", tags=["auth"])
async def api_me(
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    user = await user_service.get_user(db, auth.user_id)
    return {"success": True, "user": user.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Author endpoints
# ---------------------------------------------------------------------------

@router.post("/papers", tags=["papers"], status_code=201)
async def api_submit_paper(
    title: str = Form(...),
    author_name: str = Form(...),
    category: str = Form(...),
    topic: str = Form(""),
    abstract: str = Form(""),
    file: UploadFile = File(...),
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    store: LocalObjectStore = Depends(get_store),
    config: Config = Depends(get_config),
):
    payload = _parse(
        SubmissionCreate,
        title=title,
        author_name=author_name,
        category=category,
        topic=topic,
        abstract=abstract,
    )
    pdf = await _read_pdf(file, store, config, "papers")
    try:
        paper = await submission_service.submit_paper(db, notifier, auth, payload, pdf)
    except PaperdeskError:
        await store.delete(pdf.file_id)
        raise
    return {
        "success": True,
        "message": "Paper submitted successfully",
        "submission_id": paper.submission_id,
        "paper": public_view(paper, auth),
    }


@router.get("/papers/mine", tags=["papers"])
async def api_my_papers(
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    papers = await submission_service.list_submissions(db, author_id=auth.user_id)
    return {"success": True, "papers": [public_view(p, auth) for p in papers]}


@router.get("/papers/{submission_id}", tags=["papers"])
async def api_get_paper(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    paper = await submission_service.get_submission_for(db, auth, submission_id)
    return {"success": True, "paper": public_view(paper, auth)}


@router.patch("/papers/{submission_id}", tags=["papers"])
async def api_edit_paper(
    submission_id: str,
    req: SubmissionUpdate,
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
):
    paper = await submission_service.edit_submission(db, auth, submission_id, req)
    return {"success": True, "message": "Submission updated successfully", "paper": public_view(paper, auth)}


@router.post("/papers/{submission_id}/pdf", tags=["papers"])
async def api_reupload_paper(
    submission_id: str,
    file: UploadFile = File(...),
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
    store: LocalObjectStore = Depends(get_store),
    config: Config = Depends(get_config),
):
    await submission_service.edit_target(db, auth, submission_id)
    pdf = await _read_pdf(file, store, config, "papers")
    paper = await submission_service.replace_pdf(db, auth, submission_id, pdf)
    version = paper.versions[-1].version
    return {
        "success": True,
        "message": f"Paper version v{version} uploaded successfully",
        "version": version,
        "paper": public_view(paper, auth),
    }


@router.post("/papers/{submission_id}/revision", tags=["papers"])
async def api_submit_revision(
    submission_id: str,
    author_response: str = Form(""),
    file: UploadFile = File(...),
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    store: LocalObjectStore = Depends(get_store),
    config: Config = Depends(get_config),
):
    # Ownership and status are checked before the upload is stored.
    await submission_service.revision_target(db, auth, submission_id)
    pdf = await _read_pdf(file, store, config, "revisions")
    paper, revision = await submission_service.submit_revision(
        db, notifier, auth, submission_id, pdf, author_response
    )
    return {
        "success": True,
        "message": "Revised paper submitted successfully",
        "paper": public_view(paper, auth),
        "revision": submission_service.revision_view(paper, revision, auth),
    }


@router.get("/papers/{submission_id}/revision", tags=["papers"])
async def api_get_revision(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    paper = await submission_service.get_submission_for(db, auth, submission_id)
    revision = await submission_service.get_revision(db, submission_id)
    if revision is None:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "No revision found for this paper"},
        )
    return {"success": True, "revision": submission_service.revision_view(paper, revision, auth)}


@router.get("/files/{file_id}", tags=["papers"])
async def api_get_file(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
    store: LocalObjectStore = Depends(get_store),
):
    await copyright_service.authorize_download(db, auth, file_id)
    data = await store.read(file_id)
    return Response(content=data, media_type="application/pdf")


# ---------------------------------------------------------------------------
# Message threads
# ---------------------------------------------------------------------------

@router.get("/papers/{submission_id}/messages", tags=["messages"])
async def api_author_thread(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    messages = await message_service.get_thread(db, auth, submission_id, thread=Thread.AUTHOR)
    return {"success": True, "messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/papers/{submission_id}/messages", tags=["messages"], status_code=201)
async def api_post_author_message(
    submission_id: str,
    req: MessageRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    message = await message_service.send_message(
        db, notifier, auth, submission_id, req.message, thread=Thread.AUTHOR
    )
    return {"success": True, "message": "Message sent", "data": message.model_dump(mode="json")}


@router.get("/papers/{submission_id}/reviewer-messages", tags=["messages"])
async def api_reviewer_thread(
    submission_id: str,
    reviewer_id: str = "",
    auth: AuthContext = Depends(_editor_or_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
):
    messages = await message_service.get_thread(
        db, auth, submission_id, thread=Thread.REVIEWER, reviewer_id=reviewer_id
    )
    return {"success": True, "messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/papers/{submission_id}/reviewer-messages", tags=["messages"], status_code=201)
async def api_post_reviewer_message(
    submission_id: str,
    req: MessageRequest,
    auth: AuthContext = Depends(_editor_or_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    message = await message_service.send_message(
        db, notifier, auth, submission_id, req.message,
        thread=Thread.REVIEWER, reviewer_id=req.reviewer_id,
    )
    return {"success": True, "message": "Message sent", "data": message.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@router.post("/admin/editors", tags=["admin"], status_code=201)
async def api_create_editor(
    req: StaffCreateRequest,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    user, password = await user_service.create_staff_account(
        db, notifier, auth, req.email, Role.EDITOR, req.username
    )
    return {
        "success": True,
        "message": "Editor created successfully",
        "user": user.model_dump(mode="json"),
        "temporary_password": password,
    }


@router.get("/admin/users", tags=["admin"])
async def api_list_users(
    role: Role | None = None,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    users = await user_service.list_users(db, role)
    return {"success": True, "users": [u.model_dump(mode="json") for u in users]}


@router.get("/admin/papers", tags=["admin"])
async def api_all_papers(
    status: SubmissionStatus | None = None,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    papers = await submission_service.list_submissions(db, status=status)
    return {"success": True, "papers": [public_view(p, auth) for p in papers]}


@router.post("/admin/assign-editor", tags=["admin"])
async def api_assign_editor(
    req: EditorAssignRequest,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    paper = await submission_service.assign_editor(db, notifier, auth, req.submission_id, req.editor_id)
    return {"success": True, "message": "Editor assigned successfully", "paper": public_view(paper, auth)}


@router.post("/admin/reassign-editor", tags=["admin"])
async def api_reassign_editor(
    req: EditorAssignRequest,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    paper = await submission_service.reassign_editor(db, notifier, auth, req.submission_id, req.editor_id)
    return {"success": True, "message": "Editor reassigned successfully", "paper": public_view(paper, auth)}


@router.post("/admin/papers/{submission_id}/publish", tags=["admin"])
async def api_publish(
    submission_id: str,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    record = await acceptance_service.publish_paper(db, notifier, auth, submission_id)
    return {"success": True, "message": "Paper published", "acceptance": record.model_dump(mode="json")}


@router.post("/admin/papers/{submission_id}/certificate", tags=["admin"])
async def api_issue_certificate(
    submission_id: str,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    record = await acceptance_service.issue_certificate(db, notifier, auth, submission_id)
    return {"success": True, "message": "Certificate issued", "acceptance": record.model_dump(mode="json")}


@router.post("/admin/registration/{submission_id}/paid", tags=["admin"])
async def api_registration_paid(
    submission_id: str,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    record = await acceptance_service.mark_registration_paid(db, auth, submission_id)
    return {"success": True, "message": "Payment recorded", "registration": record.model_dump(mode="json")}


@router.get("/admin/copyright", tags=["admin"])
async def api_list_copyright(
    status: CopyrightStatus | None = None,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    records = await copyright_service.list_copyrights(db, status)
    return {"success": True, "copyrights": [r.model_dump(mode="json") for r in records]}


@router.post("/admin/copyright/review", tags=["admin"])
async def api_review_copyright(
    req: CopyrightReviewRequest,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    record = await copyright_service.review_copyright(
        db, notifier, auth, req.submission_id, req.status, req.comment
    )
    return {
        "success": True,
        "message": f"Copyright {req.status.value.lower()}",
        "copyright": record.model_dump(mode="json"),
    }


@router.get("/admin/audit", tags=["admin"])
async def api_recent_audit(
    action: AuditAction | None = None,
    limit: int = 50,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    events = await get_recent_events(db, action, limit=max(1, min(limit, 500)))
    return {"success": True, "events": events}


@router.get("/admin/audit/{target_id}", tags=["admin"])
async def api_target_audit(
    target_id: str,
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "events": await get_events_for_target(db, target_id)}


@router.get("/admin/dashboard", tags=["admin"])
async def api_admin_dashboard(
    auth: AuthContext = Depends(_admin),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "dashboard": await dashboard_service.admin_dashboard(db)}


# ---------------------------------------------------------------------------
# Editor endpoints
# ---------------------------------------------------------------------------

@router.get("/editor/papers", tags=["editor"])
async def api_editor_papers(
    status: SubmissionStatus | None = None,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    editor_id = None if auth.role == Role.ADMIN else auth.user_id
    papers = await submission_service.list_submissions(db, editor_id=editor_id, status=status)
    return {"success": True, "papers": [public_view(p, auth) for p in papers]}


@router.post("/editor/reviewers", tags=["editor"], status_code=201)
async def api_create_reviewer(
    req: StaffCreateRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    user, password = await user_service.create_staff_account(
        db, notifier, auth, req.email, Role.REVIEWER, req.username
    )
    return {
        "success": True,
        "message": "Reviewer created successfully",
        "user": user.model_dump(mode="json"),
        "temporary_password": password,
    }


@router.get("/editor/reviewers", tags=["editor"])
async def api_list_reviewers(
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    users = await user_service.list_users(db, Role.REVIEWER)
    return {"success": True, "reviewers": [u.model_dump(mode="json") for u in users]}


@router.post("/editor/assign-reviewers", tags=["editor"])
async def api_assign_reviewers(
    req: ReviewerAssignRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    config: Config = Depends(get_config),
):
    paper = await submission_service.assign_reviewers(
        db,
        notifier,
        config,
        auth,
        req.submission_id,
        req.reviewer_ids,
        deadline=req.deadline,
        deadline_days=req.deadline_days,
    )
    return {"success": True, "message": "Reviewers assigned successfully", "paper": public_view(paper, auth)}


@router.delete("/editor/papers/{submission_id}/reviewers/{reviewer_id}", tags=["editor"])
async def api_remove_reviewer(
    submission_id: str,
    reviewer_id: str,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    paper = await submission_service.remove_reviewer(db, notifier, auth, submission_id, reviewer_id)
    return {"success": True, "message": "Reviewer removed", "paper": public_view(paper, auth)}


@router.get("/editor/papers/{submission_id}/reviews", tags=["editor"])
async def api_paper_reviews(
    submission_id: str,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    reviews = await review_service.list_reviews_for_editor(db, auth, submission_id)
    return {"success": True, "reviews": reviews}


@router.post("/editor/decision", tags=["editor"])
async def api_decision(
    req: DecisionRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    config: Config = Depends(get_config),
):
    result = await decision_service.make_decision(
        db,
        notifier,
        config,
        auth,
        req.submission_id,
        req.decision,
        comments=req.comments,
        corrections=req.corrections,
        reason=req.rejection_reason,
        deadline=req.deadline,
        deadline_days=req.deadline_days,
    )
    paper = await submission_service.get_submission(db, req.submission_id)
    return {
        "success": True,
        "message": f"Decision recorded: {req.decision.value}",
        "paper": public_view(paper, auth),
        "record": result.model_dump(mode="json") if isinstance(result, BaseModel) else result,
    }


@router.post("/editor/request-revision", tags=["editor"])
async def api_request_revision(
    req: RevisionRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    config: Config = Depends(get_config),
):
    revision = await decision_service.request_revision(
        db,
        notifier,
        config,
        auth,
        req.submission_id,
        message=req.message,
        deadline=req.deadline,
        deadline_days=req.deadline_days,
    )
    return {"success": True, "message": "Revision requested", "revision": revision.model_dump(mode="json")}


@router.post("/editor/accept", tags=["editor"])
async def api_accept(
    req: AcceptRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    config: Config = Depends(get_config),
):
    record = await decision_service.accept_paper(
        db, notifier, config, auth, req.submission_id, notes=req.notes
    )
    return {"success": True, "message": "Paper accepted", "acceptance": record.model_dump(mode="json")}


@router.post("/editor/papers/{submission_id}/reject", tags=["editor"])
async def api_reject(
    submission_id: str,
    req: RejectRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
    config: Config = Depends(get_config),
):
    record = await decision_service.reject_paper(
        db, notifier, config, auth, submission_id, reason=req.reason, comments=req.comments
    )
    return {"success": True, "message": "Paper rejected", "rejection": record.model_dump(mode="json")}


@router.get("/editor/accepted", tags=["editor"])
async def api_accepted(
    category: str | None = None,
    author_email: str | None = None,
    min_rating: float | None = None,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    records = await acceptance_service.list_accepted(
        db, category=category, author_email=author_email, min_rating=min_rating
    )
    return {"success": True, "papers": [r.model_dump(mode="json") for r in records]}


@router.get("/editor/accepted/high-rated", tags=["editor"])
async def api_high_rated(
    min_rating: float | None = None,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    config: Config = Depends(get_config),
):
    threshold = config.workflow.high_rating_threshold if min_rating is None else min_rating
    records = await acceptance_service.list_accepted(db, min_rating=threshold)
    return {
        "success": True,
        "min_rating": threshold,
        "papers": [r.model_dump(mode="json") for r in records],
    }


@router.get("/editor/accepted/statistics", tags=["editor"])
async def api_accepted_statistics(
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "statistics": await acceptance_service.acceptance_statistics(db)}


@router.get("/editor/rejected", tags=["editor"])
async def api_rejected(
    reason: RejectionReason | None = None,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    records = await decision_service.list_rejected(db, reason)
    return {
        "success": True,
        "papers": [r.model_dump(mode="json") for r in records],
        "statistics": await decision_service.rejection_statistics(db),
    }


@router.get("/editor/rejected/{submission_id}", tags=["editor"])
async def api_rejected_paper(
    submission_id: str,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    record = await decision_service.get_rejected(db, submission_id)
    return {"success": True, "paper": record.model_dump(mode="json")}


@router.get("/editor/dashboard", tags=["editor"])
async def api_editor_dashboard(
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "dashboard": await dashboard_service.editor_dashboard(db, auth.user_id)}


@router.get("/editor/non-responding-reviewers", tags=["editor"])
async def api_non_responding(
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
):
    items = await reminder_service.non_responding_reviewers(db, auth)
    return {"success": True, "count": len(items), "reviewers": items}


@router.post("/editor/reminders", tags=["editor"])
async def api_send_reminder(
    req: ReminderRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    assignment = await reminder_service.send_reminder(db, notifier, auth, req.submission_id, req.reviewer_id)
    return {
        "success": True,
        "message": "Reminder sent",
        "assignment": assignment.model_dump(mode="json"),
    }


@router.post("/editor/reminders/bulk", tags=["editor"])
async def api_send_bulk_reminders(
    req: BulkReminderRequest,
    auth: AuthContext = Depends(_editor),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    results = await reminder_service.send_bulk_reminders(
        db, notifier, auth, [(r.submission_id, r.reviewer_id) for r in req.reminders]
    )
    return {
        "success": True,
        "message": f"{len(results['sent'])} reminder(s) sent, {len(results['failed'])} failed",
        **results,
    }


# ---------------------------------------------------------------------------
# Reviewer endpoints
# ---------------------------------------------------------------------------

@router.get("/reviewer/assignments", tags=["reviewer"])
async def api_reviewer_assignments(
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
):
    items = await submission_service.list_reviewer_assignments(db, auth.user_id)
    return {"success": True, "assignments": items}


@router.post("/reviewer/assignments/{submission_id}/accept", tags=["reviewer"])
async def api_accept_assignment(
    submission_id: str,
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    assignment = await submission_service.respond_to_assignment(
        db, notifier, auth, submission_id, accept=True
    )
    return {"success": True, "message": "Assignment accepted", "assignment": assignment.model_dump(mode="json")}


@router.post("/reviewer/assignments/{submission_id}/decline", tags=["reviewer"])
async def api_decline_assignment(
    submission_id: str,
    req: DeclineRequest,
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    assignment = await submission_service.respond_to_assignment(
        db, notifier, auth, submission_id, accept=False, reason=req.reason
    )
    return {"success": True, "message": "Assignment declined", "assignment": assignment.model_dump(mode="json")}


@router.post("/reviewer/submit-review/{submission_id}", tags=["reviewer"])
async def api_submit_review(
    submission_id: str,
    req: ReviewSubmission,
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
    notifier: Notifier = Depends(get_notifier),
):
    review, created = await review_service.upsert_review(db, notifier, auth, submission_id, req)
    return {
        "success": True,
        "message": "Review submitted successfully" if created else "Review updated successfully",
        "review": review.model_dump(mode="json"),
    }


@router.get("/reviewer/reviews", tags=["reviewer"])
async def api_my_reviews(
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
):
    reviews = await review_service.get_reviews_by_reviewer(db, auth.user_id)
    return {"success": True, "reviews": [r.model_dump(mode="json") for r in reviews]}


@router.get("/reviewer/messages", tags=["reviewer"])
async def api_reviewer_conversations(
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "threads": await message_service.reviewer_threads(db, auth.user_id)}


@router.get("/reviewer/dashboard", tags=["reviewer"])
async def api_reviewer_dashboard(
    auth: AuthContext = Depends(_reviewer),
    db: aiosqlite.Connection = Depends(get_connection),
):
    return {"success": True, "dashboard": await dashboard_service.reviewer_dashboard(db, auth.user_id)}


# ---------------------------------------------------------------------------
# Registration & copyright endpoints
# ---------------------------------------------------------------------------

@router.post("/registration/{submission_id}", tags=["registration"], status_code=201)
async def api_register_paper(
    submission_id: str,
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
    config: Config = Depends(get_config),
):
    record = await acceptance_service.register_paper(db, config, auth, submission_id)
    return {"success": True, "message": "Registration created", "registration": record.model_dump(mode="json")}


@router.get("/registration/{submission_id}", tags=["registration"])
async def api_get_registration(
    submission_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    await submission_service.get_submission_for(db, auth, submission_id)
    record = await acceptance_service.get_registration(db, submission_id)
    return {"success": True, "registration": record.model_dump(mode="json") if record else None}


@router.get("/copyright/dashboard", tags=["copyright"])
async def api_copyright_dashboard(
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
):
    items = []
    for record in await copyright_service.author_copyrights(db, auth):
        registration = await acceptance_service.get_registration(db, record.submission_id)
        items.append(
            {
                "copyright": record.model_dump(mode="json"),
                "registration": registration.model_dump(mode="json") if registration else None,
            }
        )
    return {"success": True, "papers": items}


@router.post("/copyright/upload", tags=["copyright"])
async def api_copyright_upload(
    submission_id: str = Form(...),
    file: UploadFile = File(...),
    auth: AuthContext = Depends(_author),
    db: aiosqlite.Connection = Depends(get_connection),
    store: LocalObjectStore = Depends(get_store),
    config: Config = Depends(get_config),
):
    await copyright_service.get_or_create_copyright(db, auth, submission_id)
    form = await _read_pdf(file, store, config, "copyright")
    record = await copyright_service.upload_form(db, auth, submission_id, form)
    return {"success": True, "message": "Copyright form uploaded", "copyright": record.model_dump(mode="json")}


@router.post("/copyright/message", tags=["copyright"])
async def api_copyright_message(
    req: CopyrightMessageRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: aiosqlite.Connection = Depends(get_connection),
):
    record = await copyright_service.post_message(db, auth, req.submission_id, req.message)
    return {"success": True, "message": "Message sent", "copyright": record.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

ops = APIRouter()


@ops.get("/health", tags=["ops"])
async def health(config: Config = Depends(get_config)):
    return {"success": True, "status": "ok", "version": API_VERSION, "environment": config.environment}


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaperdeskError)
    async def _paperdesk_error(request: Request, exc: PaperdeskError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Validation failed",
                "errors": _error_messages(list(exc.errors())),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        body: dict[str, Any] = {"success": False, "message": "Internal server error"}
        if request.app.state.config.is_development:
            body["error"] = str(exc)
            body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(status_code=500, content=body)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    config: Config | None = None,
    notifier: Notifier | None = None,
    store: LocalObjectStore | None = None,
) -> FastAPI:
    """Build the API with its collaborators; tests pass their own."""
    cfg = config or settings
    app = FastAPI(
        title="Paperdesk",
        description="Conference paper submission, review and decision workflow",
        version=API_VERSION,
    )
    app.state.config = cfg
    app.state.notifier = notifier or Notifier(config=cfg)
    app.state.store = store or LocalObjectStore.from_config(cfg)

    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=cfg.server.max_request_bytes)
    if cfg.server.log_requests:
        app.add_middleware(RequestLoggingMiddleware)
    if cfg.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.server.cors_origins,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    _install_error_handlers(app)
    app.include_router(router)
    app.include_router(ops)
    return app


app = create_app()
