from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import wraps
from typing import Any, Union

from flask import g
from sqlalchemy.orm import Session

from app.ssms.errors import Forbidden, NotFound, Unauthenticated
from app.ssms.permissions.catalog import ROLE_ADMIN
from app.ssms.permissions.resolver import has_permission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Caller claims as supplied by the token front door."""

    user_id: int
    role_code: str
    unit_id: int | None = None
    is_active: bool = True
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role_code == ROLE_ADMIN


@dataclass(frozen=True, init=False)
class RoleRequirement:
    allowed_roles: frozenset[str]

    def __init__(self, *allowed_roles: str) -> None:
        object.__setattr__(self, "allowed_roles", frozenset(allowed_roles))


@dataclass(frozen=True)
class UnitRequirement:
    # membership in some unit, not equality with a target unit
    require_same_unit: bool = True
    allow_admin_override: bool = True


@dataclass(frozen=True)
class PermissionRequirement:
    code: str


Requirement = Union[RoleRequirement, UnitRequirement, PermissionRequirement]


def describe(requirement: Requirement) -> str:
    if isinstance(requirement, RoleRequirement):
        return "role in " + ",".join(sorted(requirement.allowed_roles))
    if isinstance(requirement, UnitRequirement):
        return "unit membership" if requirement.require_same_unit else "authenticated"
    return f"permission {requirement.code}"


def evaluate(requirement: Requirement, identity: Identity | None, s: Session | None = None) -> bool:
    if identity is None or not identity.is_active:
        return False

    if isinstance(requirement, RoleRequirement):
        return identity.role_code in requirement.allowed_roles

    if isinstance(requirement, UnitRequirement):
        if requirement.allow_admin_override and identity.is_admin:
            return True
        if not requirement.require_same_unit:
            return True
        return identity.unit_id is not None

    if isinstance(requirement, PermissionRequirement):
        if s is None:
            raise ValueError("PermissionRequirement needs a session")
        try:
            return has_permission(s, identity.user_id, requirement.code)
        except NotFound:
            return False

    raise TypeError(f"Unknown requirement type: {type(requirement).__name__}")


def authorize(identity: Identity | None, requirements: Iterable[Requirement], s: Session | None = None) -> None:
    """
    All-of check. Raises Unauthenticated without an (active) identity and
    Forbidden on the first unmet requirement. Never mutates state.
    """
    if identity is None or not identity.is_active:
        raise Unauthenticated("Authentication required.")
    for req in requirements:
        if not evaluate(req, identity, s):
            missing = describe(req)
            logger.warning("Forbidden: user_id=%s missing %s", identity.user_id, missing)
            raise Forbidden(f"Not allowed: requires {missing}.", required=missing)


def current_identity() -> Identity | None:
    return getattr(g, "identity", None)


def require_identity() -> Identity:
    ident = current_identity()
    if ident is None or not ident.is_active:
        raise Unauthenticated("Authentication required.")
    return ident


def require(*requirements: Requirement) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Route decorator: run the gate against ``g.identity`` before the handler.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            from app.ssms.db import db_session

            ident = current_identity()
            needs_db = any(isinstance(r, PermissionRequirement) for r in requirements)
            authorize(ident, requirements, db_session() if needs_db else None)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
