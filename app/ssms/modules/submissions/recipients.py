"""
Recipient routing: To/CC units (optionally a specific user in the unit) fixed at
submission time. The read flag is the only later mutation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select

from app.ssms.errors import Forbidden, NotFound, ValidationError
from app.ssms.models import Unit, User
from app.ssms.rbac import Identity

from .models import RECIPIENT_TO, RECIPIENT_TYPES, Submission, SubmissionRecipient
from .workflow import optional_text

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


@dataclass(frozen=True)
class RecipientSpec:
    unit_id: int
    user_id: int | None = None
    recipient_type: str = RECIPIENT_TO


def _as_int(value: Any, field: str, idx: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"recipients[{idx}].{field} must be an integer.")


def parse_recipient_specs(raw: Any) -> list[RecipientSpec]:
    """Turn request JSON (list of {unit_id, user_id?, type?}) into RecipientSpec tuples. Shape checks only."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("recipients must be a list.")
    specs: list[RecipientSpec] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"recipients[{idx}] must be an object.")
        if item.get("unit_id") is None:
            raise ValidationError(f"recipients[{idx}].unit_id is required.")
        unit_id = _as_int(item.get("unit_id"), "unit_id", idx)
        user_id = _as_int(item["user_id"], "user_id", idx) if item.get("user_id") is not None else None
        raw_type = item["type"] if item.get("type") is not None else item.get("recipient_type")
        rtype = optional_text(raw_type, f"recipients[{idx}].type") or RECIPIENT_TO
        specs.append(RecipientSpec(unit_id=unit_id, user_id=user_id, recipient_type=rtype))
    return specs


def validate_recipient_specs(s: "Session", specs: list[RecipientSpec]) -> list[str]:
    """Validate every recipient entry against the database. Returns list of errors."""
    errors: list[str] = []
    seen: set[int] = set()

    unit_ids = {sp.unit_id for sp in specs}
    user_ids = {sp.user_id for sp in specs if sp.user_id is not None}
    known_units = set(s.execute(select(Unit.id).where(Unit.id.in_(unit_ids))).scalars()) if unit_ids else set()
    users = (
        {u.id: u for u in s.execute(select(User).where(User.id.in_(user_ids))).scalars()} if user_ids else {}
    )

    for idx, sp in enumerate(specs):
        if sp.recipient_type not in RECIPIENT_TYPES:
            errors.append(f"recipients[{idx}]: type must be one of {', '.join(RECIPIENT_TYPES)}.")
        if sp.unit_id not in known_units:
            errors.append(f"recipients[{idx}]: unit {sp.unit_id} does not exist.")
        if sp.unit_id in seen:
            errors.append(f"recipients[{idx}]: unit {sp.unit_id} is listed more than once.")
        seen.add(sp.unit_id)
        if sp.user_id is not None:
            u = users.get(sp.user_id)
            if u is None:
                errors.append(f"recipients[{idx}]: user {sp.user_id} does not exist.")
            elif u.unit_id != sp.unit_id:
                errors.append(f"recipients[{idx}]: user {sp.user_id} is not a member of unit {sp.unit_id}.")
    return errors


def route_recipients(s: "Session", submission: Submission, specs: list[RecipientSpec]) -> list[SubmissionRecipient]:
    """
    Persist one SubmissionRecipient per spec. All specs are validated before
    anything is added, so an invalid entry leaves no partial recipient set.
    Does not commit.
    """
    errors = validate_recipient_specs(s, specs)
    if errors:
        raise ValidationError("Invalid recipients.", errors=errors)

    now = datetime.utcnow()
    rows = [
        SubmissionRecipient(
            submission_id=submission.id,
            unit_id=sp.unit_id,
            recipient_user_id=sp.user_id,
            recipient_type=sp.recipient_type,
            is_read=False,
            created_at=now,
        )
        for sp in specs
    ]
    s.add_all(rows)
    s.flush()
    return rows


def _may_read_as(reader: Identity, rec: SubmissionRecipient) -> bool:
    if reader.is_admin:
        return True
    if rec.recipient_user_id is not None:
        return reader.user_id == rec.recipient_user_id
    return reader.unit_id == rec.unit_id


def mark_read(s: "Session", submission_id: int, unit_id: int, reader: Identity) -> SubmissionRecipient:
    """Idempotent: marking an already-read recipient returns it unchanged."""
    rec = s.get(SubmissionRecipient, (submission_id, unit_id))
    if rec is None:
        raise NotFound(f"Submission {submission_id} has no recipient unit {unit_id}.")
    if not _may_read_as(reader, rec):
        raise Forbidden("You are not a recipient of this submission.")
    if rec.is_read:
        return rec
    rec.is_read = True
    rec.read_at = datetime.utcnow()
    rec.read_by_user_id = reader.user_id
    s.commit()
    return rec


def inbox_for(s: "Session", viewer: Identity) -> list[tuple[Submission, SubmissionRecipient]]:
    """Submissions addressed to the viewer's unit or to the viewer, newest first."""
    conds = [SubmissionRecipient.recipient_user_id == viewer.user_id]
    if viewer.unit_id is not None:
        conds.append(
            (SubmissionRecipient.unit_id == viewer.unit_id) & (SubmissionRecipient.recipient_user_id.is_(None))
        )
    rows = s.execute(
        select(Submission, SubmissionRecipient)
        .join(SubmissionRecipient, SubmissionRecipient.submission_id == Submission.id)
        .where(or_(*conds))
        .order_by(Submission.submitted_at.desc(), Submission.id.desc())
    ).all()
    return [(sub, rec) for sub, rec in rows]
