from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, BinaryIO

from sqlalchemy import func, select
from werkzeug.utils import secure_filename

from app.ssms.audit import emit_event
from app.ssms.errors import Forbidden, NotFound, ValidationError
from app.ssms.models import User
from app.ssms.rbac import Identity, PermissionRequirement, authorize
from app.ssms.storage import Storage, submission_file_key

from .models import STATUS_SUBMITTED, Procedure, Submission, SubmissionFile, SubmissionRecipient
from .recipients import parse_recipient_specs, route_recipients
from .workflow import (
    can_approve,
    can_recall,
    decision_for,
    get_submission_or_404,
    optional_text,
    satisfies_approver_rule,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

CREATE_REQUIREMENTS = (PermissionRequirement("submission.create"),)

TITLE_MAX = 255


def next_submission_code(s: "Session", today: date | None = None) -> str:
    """SUB-YYYYMMDD-NNN, NNN restarting at 001 each day."""
    prefix = f"SUB-{(today or date.today()).strftime('%Y%m%d')}-"
    last = s.execute(
        select(Submission.submission_code)
        .where(Submission.submission_code.like(f"{prefix}%"))
        .order_by(func.length(Submission.submission_code).desc(), Submission.submission_code.desc())
        .limit(1)
    ).scalar_one_or_none()
    seq = int(last[len(prefix):]) + 1 if last else 1
    return f"{prefix}{seq:03d}"


def _resolve_designated_approver(s: "Session", explicit_id: Any, procedure: Procedure | None) -> int | None:
    if explicit_id in (None, ""):
        return procedure.approver_user_id if procedure else None
    try:
        approver_id = int(explicit_id)
    except (TypeError, ValueError):
        raise ValidationError("designated_approver_user_id must be an integer.")
    approver = s.get(User, approver_id)
    if approver is None or not approver.is_active:
        raise ValidationError(f"Designated approver {approver_id} does not exist or is inactive.")
    return approver.id


def create_submission(s: "Session", identity: Identity, payload: dict[str, Any]) -> Submission:
    authorize(identity, CREATE_REQUIREMENTS, s)

    title = optional_text(payload.get("title"), "title")
    if not title:
        raise ValidationError("title is required.")
    if len(title) > TITLE_MAX:
        raise ValidationError(f"title must be at most {TITLE_MAX} characters.")
    content = payload.get("content")
    specs = parse_recipient_specs(payload.get("recipients"))

    procedure = None
    if payload.get("procedure_id") not in (None, ""):
        try:
            procedure_id = int(payload["procedure_id"])
        except (TypeError, ValueError):
            raise ValidationError("procedure_id must be an integer.")
        procedure = s.get(Procedure, procedure_id)
        if procedure is None or not procedure.is_active:
            raise NotFound(f"Procedure {procedure_id} not found.")

    submitter = s.get(User, identity.user_id)
    if submitter is None:
        raise NotFound(f"User {identity.user_id} not found.")
    approver_id = _resolve_designated_approver(s, payload.get("designated_approver_user_id"), procedure)

    now = datetime.utcnow()
    sub = Submission(
        submission_code=next_submission_code(s, now.date()),
        procedure_id=procedure.id if procedure else None,
        title=title,
        content=content,
        unit_id=submitter.unit_id,
        status=STATUS_SUBMITTED,
        version=1,
        submitted_by_user_id=submitter.id,
        designated_approver_user_id=approver_id,
        submitted_at=now,
    )
    s.add(sub)
    s.flush()
    try:
        route_recipients(s, sub, specs)
    except ValidationError:
        s.rollback()
        raise
    s.commit()
    s.refresh(sub)

    logger.info("Submission %s created by user_id=%s", sub.submission_code, submitter.id)
    emit_event(
        actor_user_id=submitter.id,
        action="submission.create",
        target_type="Submission",
        target_id=sub.id,
        metadata={
            "submission_code": sub.submission_code,
            "procedure_id": sub.procedure_id,
            "recipients": [sp.unit_id for sp in specs],
        },
    )
    return sub


def _is_recipient(viewer: Identity, sub: Submission) -> bool:
    for rec in sub.recipients:
        if rec.recipient_user_id == viewer.user_id:
            return True
        if rec.recipient_user_id is None and viewer.unit_id is not None and rec.unit_id == viewer.unit_id:
            return True
    return False


def get_submission(s: "Session", submission_id: int, viewer: Identity) -> Submission:
    """Visible to the submitter, its recipients and anyone who may decide it (or did)."""
    authorize(viewer, (), s)
    sub = get_submission_or_404(s, submission_id)
    if viewer.is_admin or viewer.user_id in (sub.submitted_by_user_id, sub.designated_approver_user_id):
        return sub
    if _is_recipient(viewer, sub):
        return sub
    decision = decision_for(s, sub.id)
    if decision is not None and decision.approver_user_id == viewer.user_id:
        return sub
    actor = s.get(User, viewer.user_id)
    if actor is not None and actor.is_active and satisfies_approver_rule(s, actor, sub):
        return sub
    raise Forbidden("You cannot view this submission.")


def list_my_submissions(s: "Session", viewer: Identity) -> list[Submission]:
    authorize(viewer, (), s)
    return list(
        s.execute(
            select(Submission)
            .where(Submission.submitted_by_user_id == viewer.user_id)
            .order_by(Submission.submitted_at.desc(), Submission.id.desc())
        ).scalars()
    )


def list_pending_approvals(s: "Session", viewer: Identity) -> list[Submission]:
    authorize(viewer, (), s)
    pending = s.execute(
        select(Submission)
        .where(Submission.status == STATUS_SUBMITTED)
        .order_by(Submission.submitted_at.asc(), Submission.id.asc())
    ).scalars()
    return [sub for sub in pending if can_approve(s, viewer, sub)]


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def recipient_to_dict(rec: SubmissionRecipient) -> dict[str, Any]:
    return {
        "unit_id": rec.unit_id,
        "user_id": rec.recipient_user_id,
        "type": rec.recipient_type,
        "is_read": rec.is_read,
        "read_at": _dt(rec.read_at),
        "read_by_user_id": rec.read_by_user_id,
    }


def file_to_dict(f: SubmissionFile) -> dict[str, Any]:
    return {
        "id": f.id,
        "filename": f.filename,
        "content_type": f.content_type,
        "sha256": f.sha256,
        "size_bytes": f.size_bytes,
        "uploaded_at": _dt(f.uploaded_at),
        "uploaded_by_user_id": f.uploaded_by_user_id,
    }


def submission_to_dict(s: "Session", sub: Submission, viewer: Identity | None) -> dict[str, Any]:
    decision = decision_for(s, sub.id)
    return {
        "id": sub.id,
        "submission_code": sub.submission_code,
        "procedure_id": sub.procedure_id,
        "title": sub.title,
        "content": sub.content,
        "unit_id": sub.unit_id,
        "status": sub.status,
        "version": sub.version,
        "submitted_by_user_id": sub.submitted_by_user_id,
        "designated_approver_user_id": sub.designated_approver_user_id,
        "submitted_at": _dt(sub.submitted_at),
        "decided_at": _dt(sub.decided_at),
        "recalled_at": _dt(sub.recalled_at),
        "recall_reason": sub.recall_reason,
        "can_approve": can_approve(s, viewer, sub),
        "can_recall": can_recall(viewer, sub),
        "recipients": [recipient_to_dict(r) for r in sub.recipients],
        "decision": (
            {
                "action": decision.action,
                "approver_user_id": decision.approver_user_id,
                "note": decision.note,
                "action_date": _dt(decision.action_date),
            }
            if decision
            else None
        ),
        "files": [file_to_dict(f) for f in sub.files],
    }


def attach_file(
    s: "Session",
    storage: Storage,
    submission_id: int,
    identity: Identity,
    *,
    filename: str,
    data: bytes,
    content_type: str | None = None,
) -> SubmissionFile:
    authorize(identity, (), s)
    sub = get_submission_or_404(s, submission_id)
    if sub.submitted_by_user_id != identity.user_id:
        raise Forbidden("Only the submitter can attach files.")
    if sub.status != STATUS_SUBMITTED:
        raise ValidationError(f"Files can only be attached while the submission is {STATUS_SUBMITTED}.")
    if not data:
        raise ValidationError("File is empty.")

    safe_name = secure_filename(filename or "") or "attachment.bin"
    sha256 = hashlib.sha256(data).hexdigest()
    key = submission_file_key(sub.submission_code, sha256, safe_name)
    storage.put_bytes(key, data, content_type=content_type)

    row = SubmissionFile(
        submission_id=sub.id,
        storage_key=key,
        filename=safe_name,
        content_type=content_type or "application/octet-stream",
        sha256=sha256,
        size_bytes=len(data),
        uploaded_at=datetime.utcnow(),
        uploaded_by_user_id=identity.user_id,
    )
    s.add(row)
    s.commit()

    emit_event(
        actor_user_id=identity.user_id,
        action="submission.file_upload",
        target_type="SubmissionFile",
        target_id=row.id,
        metadata={"submission_code": sub.submission_code, "filename": safe_name, "sha256": sha256},
    )
    return row


def open_file(s: "Session", storage: Storage, file_id: int, identity: Identity) -> tuple[SubmissionFile, BinaryIO]:
    row = s.get(SubmissionFile, file_id)
    if row is None:
        raise NotFound(f"File {file_id} not found.")
    get_submission(s, row.submission_id, identity)
    return row, storage.open(row.storage_key)
