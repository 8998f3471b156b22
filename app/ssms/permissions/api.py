from __future__ import annotations

from collections import OrderedDict

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from app.ssms.db import db_session
from app.ssms.errors import ValidationError
from app.ssms.models import Permission, UserPermissionOverride
from app.ssms.permissions import resolver
from app.ssms.permissions.catalog import is_valid_code
from app.ssms.rbac import PermissionRequirement, require, require_identity

bp = Blueprint("permissions", __name__)


def _permission_to_dict(p: Permission) -> dict:
    return {"id": p.id, "code": p.code, "name": p.name, "module": p.module, "description": p.description}


def _override_to_dict(o: UserPermissionOverride) -> dict:
    return {
        "code": o.permission.code,
        "is_granted": o.is_granted,
        "created_at": o.created_at.isoformat() if o.created_at else None,
        "updated_at": o.updated_at.isoformat() if o.updated_at else None,
    }


def _all_permissions() -> list[Permission]:
    s = db_session()
    return list(s.execute(select(Permission).order_by(Permission.module, Permission.code)).scalars())


def _checked_code(code: str) -> str:
    if not is_valid_code(code):
        raise ValidationError(f"Malformed permission code: {code!r}")
    return code


@bp.get("/permissions")
def permissions_list():
    require_identity()
    return jsonify({"items": [_permission_to_dict(p) for p in _all_permissions()]})


@bp.get("/permissions/grouped")
def permissions_grouped():
    require_identity()
    grouped: OrderedDict[str, list[dict]] = OrderedDict()
    for p in _all_permissions():
        grouped.setdefault(p.module, []).append(_permission_to_dict(p))
    return jsonify({"modules": [{"module": m, "permissions": items} for m, items in grouped.items()]})


@bp.get("/permissions/check/<code>")
def permissions_check(code: str):
    ident = require_identity()
    code = _checked_code(code)
    granted = resolver.has_permission(db_session(), ident.user_id, code)
    return jsonify({"code": code, "granted": granted})


@bp.get("/permissions/me")
def permissions_me():
    ident = require_identity()
    return jsonify({"user_id": ident.user_id, "permissions": sorted(resolver.resolve_permissions(db_session(), ident.user_id))})


@bp.get("/users/<int:user_id>/permissions")
@require(PermissionRequirement("user.edit"))
def user_permissions_get(user_id: int):
    s = db_session()
    return jsonify(
        {
            "user_id": user_id,
            "effective": sorted(resolver.resolve_permissions(s, user_id)),
            "overrides": [_override_to_dict(o) for o in resolver.list_overrides(s, user_id)],
        }
    )


@bp.put("/users/<int:user_id>/permissions/<code>")
@require(PermissionRequirement("user.edit"))
def user_permission_set(user_id: int, code: str):
    ident = require_identity()
    code = _checked_code(code)
    payload = request.get_json(silent=True) or {}
    granted = payload.get("granted")
    if not isinstance(granted, bool):
        raise ValidationError("granted must be true or false.")
    s = db_session()
    if granted:
        row = resolver.grant_permission(s, user_id, code, actor_id=ident.user_id)
    else:
        row = resolver.revoke_permission(s, user_id, code, actor_id=ident.user_id)
    return jsonify(_override_to_dict(row))


@bp.delete("/users/<int:user_id>/permissions/<code>")
@require(PermissionRequirement("user.edit"))
def user_permission_remove(user_id: int, code: str):
    ident = require_identity()
    code = _checked_code(code)
    removed = resolver.remove_override(db_session(), user_id, code, actor_id=ident.user_id)
    return jsonify({"removed": removed})


@bp.put("/roles/<int:role_id>/permissions")
@require(PermissionRequirement("system.manage"))
def role_permissions_set(role_id: int):
    ident = require_identity()
    payload = request.get_json(silent=True) or {}
    codes = payload.get("codes")
    if not isinstance(codes, list) or not all(isinstance(c, str) for c in codes):
        raise ValidationError("codes must be a list of permission codes.")
    bad = [c for c in codes if not is_valid_code(c)]
    if bad:
        raise ValidationError("Malformed permission codes.", codes=bad)
    result = resolver.set_role_permissions(db_session(), role_id, codes, actor_id=ident.user_id)
    return jsonify({"role_id": role_id, "codes": sorted(result)})


@bp.patch("/roles/<int:role_id>")
@require(PermissionRequirement("system.manage"))
def role_rename(role_id: int):
    ident = require_identity()
    payload = request.get_json(silent=True) or {}
    role = resolver.rename_role(db_session(), role_id, name=payload.get("name"), actor_id=ident.user_id)
    return jsonify({"id": role.id, "code": role.code, "name": role.name, "is_system_role": role.is_system_role})


@bp.delete("/roles/<int:role_id>")
@require(PermissionRequirement("system.manage"))
def role_delete(role_id: int):
    ident = require_identity()
    resolver.delete_role(db_session(), role_id, actor_id=ident.user_id)
    return jsonify({"deleted": role_id})
