"""
Permission catalog: the static table of permission codes grouped by module,
plus the baseline permission set of each system role.

No logic beyond lookup; ``sync_catalog`` writes the table into the database
idempotently (used by the seed script and the test fixtures).
"""
from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_CAPTAIN = "CAPTAIN"
ROLE_SAFETY_OFFICER = "SAFETY_OFFICER"
ROLE_USER = "USER"

PERMISSION_CODE_RE = re.compile(r"^[a-z][a-z_]*(\.[a-z][a-z_]*)+$")
PERMISSION_CODE_MAX_LEN = 100


@dataclass(frozen=True)
class CatalogEntry:
    code: str
    name: str
    module: str
    description: str = ""


CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry("system.manage", "System: manage", "System", "Full system administration"),
    CatalogEntry("user.view", "Users: view", "System"),
    CatalogEntry("user.create", "Users: create", "System"),
    CatalogEntry("user.edit", "Users: edit (incl. permission overrides)", "System"),
    CatalogEntry("user.delete", "Users: delete", "System"),
    CatalogEntry("procedure.view", "Procedures: view", "Procedure"),
    CatalogEntry("procedure.create", "Procedures: create", "Procedure"),
    CatalogEntry("procedure.edit", "Procedures: edit", "Procedure"),
    CatalogEntry("procedure.delete", "Procedures: delete", "Procedure"),
    CatalogEntry("procedure.approve", "Procedures: approve", "Procedure"),
    CatalogEntry("template.view", "Templates: view", "Template"),
    CatalogEntry("template.create", "Templates: create", "Template"),
    CatalogEntry("template.edit", "Templates: edit", "Template"),
    CatalogEntry("template.delete", "Templates: delete", "Template"),
    CatalogEntry("template.approve", "Templates: approve", "Template"),
    CatalogEntry("submission.view", "Submissions: view", "Submission"),
    CatalogEntry("submission.create", "Submissions: create", "Submission"),
    CatalogEntry("submission.edit", "Submissions: edit", "Submission"),
    CatalogEntry("submission.delete", "Submissions: delete", "Submission"),
    CatalogEntry("submission.approve", "Submissions: approve / reject", "Submission"),
    CatalogEntry("operations.view", "Operations records: view", "Operations"),
    CatalogEntry("operations.create", "Operations records: create", "Operations"),
    CatalogEntry("operations.edit", "Operations records: edit", "Operations"),
    CatalogEntry("operations.delete", "Operations records: delete", "Operations"),
    CatalogEntry("operations.approve", "Operations records: approve", "Operations"),
    CatalogEntry("unit.view", "Units: view", "Unit"),
    CatalogEntry("unit.create", "Units: create", "Unit"),
    CatalogEntry("unit.edit", "Units: edit", "Unit"),
    CatalogEntry("unit.delete", "Units: delete", "Unit"),
    CatalogEntry("unit.manage", "Units: manage", "Unit"),
    CatalogEntry("audit.view", "Audit log: view", "Audit"),
    CatalogEntry("audit.export", "Audit log: export", "Audit"),
    CatalogEntry("audit.delete", "Audit log: delete", "Audit"),
    CatalogEntry("audit.ops.view", "Operations log: view", "Audit"),
    CatalogEntry("audit.ops.export", "Operations log: export", "Audit"),
    CatalogEntry("report.view", "Reports: view", "Report"),
    CatalogEntry("report.create", "Reports: create", "Report"),
    CatalogEntry("report.export", "Reports: export", "Report"),
    CatalogEntry("report.delete", "Reports: delete", "Report"),
    CatalogEntry("report.approve", "Reports: approve", "Report"),
)

_BY_CODE = {e.code: e for e in CATALOG}

_MANAGER_EXCLUDED = frozenset(
    {
        "system.manage",
        "user.create",
        "user.delete",
        "procedure.delete",
        "template.delete",
        "submission.delete",
        "operations.delete",
        "audit.delete",
    }
)

# (code, display name, description) of the roles seeded as system roles
SYSTEM_ROLES: tuple[tuple[str, str, str], ...] = (
    (ROLE_ADMIN, "Administrator", "Full system administration"),
    (ROLE_MANAGER, "Manager", "Department / unit manager"),
    (ROLE_CAPTAIN, "Captain", "Vessel captain"),
    (ROLE_SAFETY_OFFICER, "Safety Officer", "QHSE safety officer"),
    (ROLE_USER, "User", "Basic user"),
)

ROLE_BASELINES: dict[str, frozenset[str]] = {
    ROLE_ADMIN: frozenset(_BY_CODE),
    ROLE_MANAGER: frozenset(c for c in _BY_CODE if c not in _MANAGER_EXCLUDED),
    ROLE_CAPTAIN: frozenset(
        {
            "procedure.view", "template.view", "submission.view", "submission.create", "submission.edit",
            "operations.view", "operations.create", "operations.edit", "operations.approve",
            "audit.ops.view", "audit.ops.export",
            "report.view", "report.create", "report.export", "unit.view",
        }
    ),
    ROLE_SAFETY_OFFICER: frozenset(
        {
            "procedure.view", "procedure.create", "procedure.edit", "procedure.approve",
            "template.view", "template.create", "template.edit", "template.approve",
            "submission.view", "submission.create", "submission.edit", "submission.approve",
            "operations.view", "operations.approve",
            "audit.view", "audit.export", "audit.ops.view", "audit.ops.export",
            "report.view", "unit.view",
        }
    ),
    ROLE_USER: frozenset(
        {
            "procedure.view", "template.view",
            "submission.view", "submission.create",
            "operations.view", "operations.create",
            "audit.ops.view",
            "report.view", "report.create", "unit.view",
        }
    ),
}


def get(code: str) -> CatalogEntry | None:
    return _BY_CODE.get(code)


def codes() -> list[str]:
    return [e.code for e in CATALOG]


def by_module() -> "OrderedDict[str, list[CatalogEntry]]":
    grouped: OrderedDict[str, list[CatalogEntry]] = OrderedDict()
    for e in CATALOG:
        grouped.setdefault(e.module, []).append(e)
    return grouped


def is_valid_code(code: str | None) -> bool:
    """Format check only (``module.action``); does not require the code to exist."""
    if not code or len(code) > PERMISSION_CODE_MAX_LEN:
        return False
    return bool(PERMISSION_CODE_RE.match(code))


def sync_catalog(s: "Session") -> None:
    """
    Insert missing permissions and system roles.
    Baselines are only attached to newly created roles; existing roles keep their current set.
    """
    from app.ssms.models import Permission, Role

    perms: dict[str, Permission] = {p.code: p for p in s.query(Permission).all()}
    for e in CATALOG:
        if e.code not in perms:
            p = Permission(code=e.code, name=e.name, module=e.module, description=e.description or None)
            s.add(p)
            perms[e.code] = p

    for code, name, description in SYSTEM_ROLES:
        role = s.query(Role).filter(Role.code == code).one_or_none()
        if role is None:
            role = Role(code=code, name=name, description=description, is_system_role=True)
            s.add(role)
            role.permissions.extend(perms[c] for c in codes() if c in ROLE_BASELINES[code])
    s.flush()
