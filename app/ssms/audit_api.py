from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta

from flask import Blueprint, jsonify, request

from app.ssms.db import db_session
from app.ssms.errors import ValidationError
from app.ssms.models import AuditEvent
from app.ssms.rbac import PermissionRequirement, require

bp = Blueprint("audit_log", __name__)

PAGE_SIZE_DEFAULT = 50
PAGE_SIZE_MAX = 100


def _parse_date(name: str) -> date | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be YYYY-MM-DD.")


def _int_arg(name: str, default: int | None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.")


def event_to_dict(e: AuditEvent) -> dict:
    return {
        "id": e.id,
        "created_at": e.created_at.isoformat() if e.created_at else None,
        "request_id": e.request_id,
        "actor_user_id": e.actor_user_id,
        "action": e.action,
        "target_type": e.target_type,
        "target_id": e.target_id,
        "reason": e.reason,
        "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
        "client_ip": e.client_ip,
    }


@bp.get("/audit-logs")
@require(PermissionRequirement("audit.view"))
def audit_list():
    """
    Newest first, paged. Filters: actor_user_id, action, target_type, target_id,
    date_from / date_to (YYYY-MM-DD, both inclusive).
    """
    actor_user_id = _int_arg("actor_user_id", None)
    action = (request.args.get("action") or "").strip()
    target_type = (request.args.get("target_type") or "").strip()
    target_id = (request.args.get("target_id") or "").strip()
    date_from = _parse_date("date_from")
    date_to = _parse_date("date_to")
    page = max(_int_arg("page", 1), 1)
    page_size = min(max(_int_arg("page_size", PAGE_SIZE_DEFAULT), 1), PAGE_SIZE_MAX)

    s = db_session()
    q = s.query(AuditEvent)
    if actor_user_id is not None:
        q = q.filter(AuditEvent.actor_user_id == actor_user_id)
    if action:
        q = q.filter(AuditEvent.action == action)
    if target_type:
        q = q.filter(AuditEvent.target_type == target_type)
    if target_id:
        q = q.filter(AuditEvent.target_id == target_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # whole day
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    total = q.count()
    events = (
        q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return jsonify(
        {
            "items": [event_to_dict(e) for e in events],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
    )


@bp.get("/audit-logs/action-types")
@require(PermissionRequirement("audit.view"))
def audit_action_types():
    s = db_session()
    rows = s.query(AuditEvent.action).distinct().order_by(AuditEvent.action).all()
    return jsonify({"items": [r[0] for r in rows]})


@bp.get("/audit-logs/target-types")
@require(PermissionRequirement("audit.view"))
def audit_target_types():
    s = db_session()
    rows = (
        s.query(AuditEvent.target_type)
        .filter(AuditEvent.target_type.isnot(None))
        .distinct()
        .order_by(AuditEvent.target_type)
        .all()
    )
    return jsonify({"items": [r[0] for r in rows]})
