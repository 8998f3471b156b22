"""
Submission lifecycle state machine.

    Submitted --approve--> Approved
    Submitted --reject---> Rejected
    Submitted --recall---> Recalled

Every transition is a compare-and-swap on ``status`` (UPDATE ... WHERE status =
'Submitted'); the decision row is inserted in the same transaction. A caller
that loses a race sees zero rows affected and gets ``Conflict``. Nothing here
retries.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from flask import current_app, has_app_context
from sqlalchemy import select, update

from app.ssms.audit import emit_event
from app.ssms.errors import Conflict, Forbidden, NotFound, ValidationError
from app.ssms.models import Unit, User
from app.ssms.permissions.catalog import ROLE_ADMIN, ROLE_MANAGER
from app.ssms.rbac import Identity, PermissionRequirement, authorize

from .models import (
    ACTION_APPROVE,
    ACTION_REJECT,
    STATUS_APPROVED,
    STATUS_RECALLED,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    ApprovalDecision,
    Submission,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

APPROVER_ROLES = frozenset({ROLE_MANAGER, ROLE_ADMIN})
DECIDE_REQUIREMENTS = (PermissionRequirement("submission.approve"),)

RECALL_REASON_MIN = 10
RECALL_REASON_MAX = 1000
NOTE_MAX = 2000

# Guards against a corrupted (cyclic) unit tree.
_MAX_UNIT_DEPTH = 64


def get_submission_or_404(s: "Session", submission_id: int) -> Submission:
    sub = s.get(Submission, submission_id)
    if sub is None:
        raise NotFound(f"Submission {submission_id} not found.")
    return sub


def _user_or_404(s: "Session", user_id: int) -> User:
    u = s.get(User, user_id)
    if u is None:
        raise NotFound(f"User {user_id} not found.")
    return u


def unit_ancestry(s: "Session", unit_id: int | None) -> list[int]:
    """unit_id followed by its parents up to the root."""
    chain: list[int] = []
    current = unit_id
    while current is not None and current not in chain and len(chain) < _MAX_UNIT_DEPTH:
        chain.append(current)
        current = s.execute(select(Unit.parent_unit_id).where(Unit.id == current)).scalar_one_or_none()
    return chain


def unit_in_scope(s: "Session", actor_unit_id: int | None, target_unit_id: int | None) -> bool:
    """True when the actor's unit is the target unit or one of its ancestors."""
    if actor_unit_id is None or target_unit_id is None:
        return False
    return actor_unit_id in unit_ancestry(s, target_unit_id)


def satisfies_approver_rule(s: "Session", actor: User, sub: Submission) -> bool:
    if sub.designated_approver_user_id is not None:
        return actor.id == sub.designated_approver_user_id
    role_code = actor.role.code if actor.role else None
    if role_code not in APPROVER_ROLES:
        return False
    if role_code == ROLE_ADMIN:
        return True
    return unit_in_scope(s, actor.unit_id, sub.unit_id)


def _recall_window() -> timedelta | None:
    minutes = int(current_app.config.get("RECALL_WINDOW_MINUTES", 0)) if has_app_context() else 0
    return timedelta(minutes=minutes) if minutes > 0 else None


def _recall_window_open(sub: Submission, now: datetime | None = None) -> bool:
    window = _recall_window()
    if window is None:
        return True
    return (now or datetime.utcnow()) - sub.submitted_at <= window


def can_approve(s: "Session", viewer: Identity | User | None, sub: Submission) -> bool:
    """Read-side projection; never stored."""
    if viewer is None or sub.status != STATUS_SUBMITTED:
        return False
    user_id = viewer.user_id if isinstance(viewer, Identity) else viewer.id
    actor = s.get(User, user_id)
    if actor is None or not actor.is_active:
        return False
    return satisfies_approver_rule(s, actor, sub)


def can_recall(viewer: Identity | User | None, sub: Submission) -> bool:
    if viewer is None or sub.status != STATUS_SUBMITTED:
        return False
    user_id = viewer.user_id if isinstance(viewer, Identity) else viewer.id
    return user_id == sub.submitted_by_user_id and _recall_window_open(sub)


def _ensure_submitted(sub: Submission, attempted: str) -> None:
    if sub.status != STATUS_SUBMITTED:
        raise Conflict(
            f"Cannot {attempted} submission {sub.id}: it is already {sub.status}.",
            status=sub.status,
        )


def _compare_and_set(s: "Session", sub: Submission, attempted: str, **values) -> None:
    """
    UPDATE submissions SET ... WHERE id = :id AND status = 'Submitted'.
    Leaves the transaction open on success; rolls back and raises Conflict on a lost race.
    """
    result = s.execute(
        update(Submission)
        .where(Submission.id == sub.id, Submission.status == STATUS_SUBMITTED)
        .values(version=Submission.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return
    s.rollback()
    current = s.execute(select(Submission.status).where(Submission.id == sub.id)).scalar_one_or_none()
    logger.warning("Lost transition race: submission_id=%s attempted=%s current=%s", sub.id, attempted, current)
    raise Conflict(
        f"Cannot {attempted} submission {sub.id}: it is already {current}.",
        status=current,
    )


def optional_text(value: object, field: str) -> str:
    """Stripped text of an optional JSON string field; None reads as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    return value.strip()


def _clean_note(note: str | None) -> str | None:
    note = optional_text(note, "note")
    if len(note) > NOTE_MAX:
        raise ValidationError(f"Note must be at most {NOTE_MAX} characters.")
    return note or None


def _decide(s: "Session", submission_id: int, identity: Identity, *, action: str, note: str | None) -> Submission:
    attempted = "approve" if action == ACTION_APPROVE else "reject"
    sub = get_submission_or_404(s, submission_id)
    _ensure_submitted(sub, attempted)

    authorize(identity, DECIDE_REQUIREMENTS, s)
    actor = _user_or_404(s, identity.user_id)
    if not satisfies_approver_rule(s, actor, sub):
        logger.warning("Approver rule denied: user_id=%s submission_id=%s", actor.id, sub.id)
        raise Forbidden("You are not an approver for this submission.")

    now = datetime.utcnow()
    new_status = STATUS_APPROVED if action == ACTION_APPROVE else STATUS_REJECTED
    _compare_and_set(s, sub, attempted, status=new_status, decided_at=now)
    s.add(
        ApprovalDecision(
            submission_id=sub.id,
            approver_user_id=actor.id,
            action=action,
            note=note,
            action_date=now,
        )
    )
    s.commit()
    s.refresh(sub)

    logger.info("Submission %s %s by user_id=%s", sub.id, new_status, actor.id)
    emit_event(
        actor_user_id=actor.id,
        action=f"submission.{attempted}",
        target_type="Submission",
        target_id=sub.id,
        reason=note,
        metadata={"submission_code": sub.submission_code, "from": STATUS_SUBMITTED, "to": new_status},
    )
    return sub


def approve_submission(s: "Session", submission_id: int, identity: Identity, note: str | None = None) -> Submission:
    return _decide(s, submission_id, identity, action=ACTION_APPROVE, note=_clean_note(note))


def reject_submission(s: "Session", submission_id: int, identity: Identity, note: str | None) -> Submission:
    cleaned = _clean_note(note)
    if not cleaned:
        raise ValidationError("A rejection note is required.")
    return _decide(s, submission_id, identity, action=ACTION_REJECT, note=cleaned)


def validate_recall_reason(reason: str | None) -> str:
    reason = optional_text(reason, "reason")
    if len(reason) < RECALL_REASON_MIN:
        raise ValidationError(f"Recall reason must be at least {RECALL_REASON_MIN} characters.")
    if len(reason) > RECALL_REASON_MAX:
        raise ValidationError(f"Recall reason must be at most {RECALL_REASON_MAX} characters.")
    return reason


def recall_submission(s: "Session", submission_id: int, identity: Identity, reason: str | None) -> Submission:
    reason = validate_recall_reason(reason)
    sub = get_submission_or_404(s, submission_id)
    _ensure_submitted(sub, "recall")

    authorize(identity, (), s)
    if identity.user_id != sub.submitted_by_user_id:
        logger.warning("Recall denied: user_id=%s is not the submitter of %s", identity.user_id, sub.id)
        raise Forbidden("Only the submitter can recall this submission.")
    if not _recall_window_open(sub):
        raise Forbidden("The recall window for this submission has passed.")

    now = datetime.utcnow()
    _compare_and_set(s, sub, "recall", status=STATUS_RECALLED, recalled_at=now, recall_reason=reason)
    s.commit()
    s.refresh(sub)

    logger.info("Submission %s Recalled by user_id=%s", sub.id, identity.user_id)
    emit_event(
        actor_user_id=identity.user_id,
        action="submission.recall",
        target_type="Submission",
        target_id=sub.id,
        reason=reason,
        metadata={"submission_code": sub.submission_code, "from": STATUS_SUBMITTED, "to": STATUS_RECALLED},
    )
    return sub


def decision_for(s: "Session", submission_id: int) -> ApprovalDecision | None:
    return s.execute(
        select(ApprovalDecision).where(ApprovalDecision.submission_id == submission_id)
    ).scalar_one_or_none()
