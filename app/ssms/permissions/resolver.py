"""
Effective permissions: role baseline combined with per-user overrides.

Every call reads the current Role / RolePermission / UserPermissionOverride
rows through the caller's session. Nothing is cached between calls: a role or
override change is visible to the very next check.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from app.ssms.audit import emit_event
from app.ssms.errors import Forbidden, NotFound, ValidationError
from app.ssms.models import Permission, Role, RolePermission, User, UserPermissionOverride

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _user_row(s: "Session", user_id: int):
    row = s.execute(select(User.id, User.role_id, User.is_active).where(User.id == user_id)).one_or_none()
    if row is None:
        raise NotFound(f"User {user_id} not found.")
    return row


def _permission_or_404(s: "Session", code: str) -> Permission:
    p = s.execute(select(Permission).where(Permission.code == code)).scalar_one_or_none()
    if p is None:
        raise NotFound(f"Permission {code!r} not found.")
    return p


def role_baseline(s: "Session", role_id: int) -> set[str]:
    rows = s.execute(
        select(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
    ).scalars()
    return set(rows)


def resolve_permissions(s: "Session", user_id: int) -> set[str]:
    user = _user_row(s, user_id)
    if not user.is_active:
        return set()

    effective = role_baseline(s, user.role_id)
    overrides = s.execute(
        select(Permission.code, UserPermissionOverride.is_granted)
        .join(Permission, Permission.id == UserPermissionOverride.permission_id)
        .where(UserPermissionOverride.user_id == user_id)
    ).all()
    # Overrides go on after the baseline so they always win.
    for code, is_granted in overrides:
        if is_granted:
            effective.add(code)
        else:
            effective.discard(code)
    return effective


def has_permission(s: "Session", user_id: int, code: str) -> bool:
    user = _user_row(s, user_id)
    if not user.is_active:
        return False

    override = s.execute(
        select(UserPermissionOverride.is_granted)
        .join(Permission, Permission.id == UserPermissionOverride.permission_id)
        .where(UserPermissionOverride.user_id == user_id, Permission.code == code)
    ).scalar_one_or_none()
    if override is not None:
        return bool(override)

    hit = s.execute(
        select(RolePermission.permission_id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(RolePermission.role_id == user.role_id, Permission.code == code)
        .limit(1)
    ).first()
    return hit is not None


def list_overrides(s: "Session", user_id: int) -> list[UserPermissionOverride]:
    _user_row(s, user_id)
    return list(
        s.execute(
            select(UserPermissionOverride)
            .where(UserPermissionOverride.user_id == user_id)
            .order_by(UserPermissionOverride.permission_id)
        ).scalars()
    )


def _set_override(s: "Session", user_id: int, code: str, *, granted: bool, actor_id: int | None) -> UserPermissionOverride:
    _user_row(s, user_id)
    perm = _permission_or_404(s, code)

    row = s.get(UserPermissionOverride, (user_id, perm.id))
    if row is not None and row.is_granted == granted:
        return row

    now = datetime.utcnow()
    if row is None:
        row = UserPermissionOverride(user_id=user_id, permission_id=perm.id, is_granted=granted, created_at=now)
        s.add(row)
    else:
        # update in place, never delete+insert
        row.is_granted = granted
        row.updated_at = now
    s.commit()

    action = "permission.grant" if granted else "permission.revoke"
    logger.info("%s user_id=%s code=%s actor_id=%s", action, user_id, code, actor_id)
    emit_event(
        actor_user_id=actor_id,
        action=action,
        target_type="User",
        target_id=user_id,
        metadata={"permission": code},
    )
    return row


def grant_permission(s: "Session", user_id: int, code: str, *, actor_id: int | None) -> UserPermissionOverride:
    return _set_override(s, user_id, code, granted=True, actor_id=actor_id)


def revoke_permission(s: "Session", user_id: int, code: str, *, actor_id: int | None) -> UserPermissionOverride:
    return _set_override(s, user_id, code, granted=False, actor_id=actor_id)


def remove_override(s: "Session", user_id: int, code: str, *, actor_id: int | None) -> bool:
    """Drop the override so the role baseline applies again. Returns False if there was none."""
    _user_row(s, user_id)
    perm = _permission_or_404(s, code)
    result = s.execute(
        delete(UserPermissionOverride).where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id == perm.id,
        )
    )
    if not result.rowcount:
        s.rollback()
        return False
    s.commit()
    emit_event(
        actor_user_id=actor_id,
        action="permission.override_remove",
        target_type="User",
        target_id=user_id,
        metadata={"permission": code},
    )
    return True


def _role_or_404(s: "Session", role_id: int) -> Role:
    role = s.get(Role, role_id)
    if role is None:
        raise NotFound(f"Role {role_id} not found.")
    return role


def set_role_permissions(s: "Session", role_id: int, codes: list[str], *, actor_id: int | None) -> set[str]:
    """Replace a role's baseline set. Unknown codes fail the whole call."""
    role = _role_or_404(s, role_id)
    wanted = set(codes)
    perms = list(s.execute(select(Permission).where(Permission.code.in_(wanted))).scalars()) if wanted else []
    missing = wanted - {p.code for p in perms}
    if missing:
        raise NotFound(f"Unknown permission codes: {', '.join(sorted(missing))}")

    before = role_baseline(s, role.id)
    s.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
    s.add_all(RolePermission(role_id=role.id, permission_id=p.id) for p in perms)
    s.commit()
    # role.permissions may still hold the old collection
    s.expire(role)

    emit_event(
        actor_user_id=actor_id,
        action="role.permissions_update",
        target_type="Role",
        target_id=role.id,
        metadata={"added": sorted(wanted - before), "removed": sorted(before - wanted)},
    )
    return wanted


def rename_role(s: "Session", role_id: int, *, name: str | None, actor_id: int | None) -> Role:
    role = _role_or_404(s, role_id)
    if role.is_system_role:
        raise Forbidden(f"Role {role.code} is a system role and cannot be modified.")
    if name is not None and not isinstance(name, str):
        raise ValidationError("Role name must be a string.")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Role name is required.")
    old = role.name
    role.name = name
    s.commit()
    emit_event(
        actor_user_id=actor_id,
        action="role.update",
        target_type="Role",
        target_id=role.id,
        metadata={"name": {"old": old, "new": name}},
    )
    return role


def delete_role(s: "Session", role_id: int, *, actor_id: int | None) -> None:
    role = _role_or_404(s, role_id)
    if role.is_system_role:
        raise Forbidden(f"Role {role.code} is a system role and cannot be deleted.")
    in_use = s.execute(select(User.id).where(User.role_id == role.id).limit(1)).first()
    if in_use is not None:
        raise ValidationError(f"Role {role.code} is still assigned to users.")
    code = role.code
    s.delete(role)
    s.commit()
    emit_event(actor_user_id=actor_id, action="role.delete", target_type="Role", target_id=role_id, metadata={"code": code})
