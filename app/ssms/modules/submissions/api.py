from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_file

from app.ssms.db import db_session
from app.ssms.errors import ValidationError
from app.ssms.rbac import PermissionRequirement, require, require_identity
from app.ssms.storage import storage_from_config

from . import recipients, service, workflow

bp = Blueprint("submissions", __name__)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


@bp.post("/submissions")
@require(PermissionRequirement("submission.create"))
def submission_create():
    ident = require_identity()
    s = db_session()
    sub = service.create_submission(s, ident, _json_body())
    return jsonify(service.submission_to_dict(s, sub, ident)), 201


@bp.get("/submissions/mine")
def submission_list_mine():
    ident = require_identity()
    s = db_session()
    items = service.list_my_submissions(s, ident)
    return jsonify({"items": [service.submission_to_dict(s, sub, ident) for sub in items]})


@bp.get("/submissions/inbox")
def submission_inbox():
    ident = require_identity()
    s = db_session()
    items = []
    for sub, rec in recipients.inbox_for(s, ident):
        d = service.submission_to_dict(s, sub, ident)
        d["delivery"] = service.recipient_to_dict(rec)
        items.append(d)
    return jsonify({"items": items})


@bp.get("/submissions/<int:submission_id>")
def submission_detail(submission_id: int):
    ident = require_identity()
    s = db_session()
    sub = service.get_submission(s, submission_id, ident)
    return jsonify(service.submission_to_dict(s, sub, ident))


@bp.get("/approvals/pending")
@require(PermissionRequirement("submission.approve"))
def approvals_pending():
    ident = require_identity()
    s = db_session()
    items = service.list_pending_approvals(s, ident)
    return jsonify({"items": [service.submission_to_dict(s, sub, ident) for sub in items]})


@bp.post("/submissions/<int:submission_id>/approve")
def submission_approve(submission_id: int):
    ident = require_identity()
    payload = _json_body()
    s = db_session()
    sub = workflow.approve_submission(s, submission_id, ident, payload.get("note"))
    return jsonify(service.submission_to_dict(s, sub, ident))


@bp.post("/submissions/<int:submission_id>/reject")
def submission_reject(submission_id: int):
    ident = require_identity()
    payload = _json_body()
    s = db_session()
    sub = workflow.reject_submission(s, submission_id, ident, payload.get("note"))
    return jsonify(service.submission_to_dict(s, sub, ident))


@bp.post("/submissions/<int:submission_id>/recall")
def submission_recall(submission_id: int):
    ident = require_identity()
    payload = _json_body()
    s = db_session()
    sub = workflow.recall_submission(s, submission_id, ident, payload.get("reason"))
    return jsonify(service.submission_to_dict(s, sub, ident))


@bp.post("/submissions/<int:submission_id>/recipients/<int:unit_id>/read")
def recipient_mark_read(submission_id: int, unit_id: int):
    ident = require_identity()
    s = db_session()
    rec = recipients.mark_read(s, submission_id, unit_id, ident)
    return jsonify(service.recipient_to_dict(rec))


@bp.post("/submissions/<int:submission_id>/files")
def submission_file_upload(submission_id: int):
    ident = require_identity()
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload (multipart field 'file').")
    data = f.read()
    s = db_session()
    row = service.attach_file(
        s,
        storage_from_config(current_app.config),
        submission_id,
        ident,
        filename=f.filename,
        data=data,
        content_type=f.mimetype or None,
    )
    return jsonify(service.file_to_dict(row)), 201


@bp.get("/submissions/files/<int:file_id>")
def submission_file_download(file_id: int):
    ident = require_identity()
    s = db_session()
    row, fobj = service.open_file(s, storage_from_config(current_app.config), file_id, ident)
    return send_file(
        fobj,
        mimetype=row.content_type,
        as_attachment=True,
        download_name=row.filename,
        max_age=0,
    )
