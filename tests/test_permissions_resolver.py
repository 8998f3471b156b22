import pytest

from app.ssms.errors import Forbidden, NotFound, ValidationError
from app.ssms.models import AuditEvent, Role, User, UserPermissionOverride
from app.ssms.permissions import catalog
from app.ssms.permissions.resolver import (
    delete_role,
    grant_permission,
    has_permission,
    list_overrides,
    remove_override,
    rename_role,
    resolve_permissions,
    revoke_permission,
    role_baseline,
    set_role_permissions,
)


def test_catalog_codes_are_well_formed_and_grouped():
    assert len(catalog.codes()) == len(set(catalog.codes()))
    assert all(catalog.is_valid_code(c) for c in catalog.codes())
    grouped = catalog.by_module()
    assert list(grouped)[0] == "System"
    assert "submission.approve" in [e.code for e in grouped["Submission"]]
    assert catalog.get("audit.ops.view").module == "Audit"
    assert catalog.get("nope.nope") is None


@pytest.mark.parametrize(
    "code,ok",
    [
        ("submission.approve", True),
        ("audit.ops.view", True),
        ("Submission.approve", False),
        ("submission", False),
        ("submission.", False),
        ("", False),
        ("a." + "b" * 100, False),
    ],
)
def test_is_valid_code(code, ok):
    assert catalog.is_valid_code(code) is ok


def test_sync_catalog_is_idempotent(session):
    before = {r.code: {p.code for p in r.permissions} for r in session.query(Role).all()}
    catalog.sync_catalog(session)
    session.commit()
    after = {r.code: {p.code for p in r.permissions} for r in session.query(Role).all()}
    assert before == after
    assert after["ADMIN"] == set(catalog.codes())
    assert all(r.is_system_role for r in session.query(Role).all())


def test_baseline_follows_role(session, seed):
    assert resolve_permissions(session, seed.users["user"]) == set(catalog.ROLE_BASELINES["USER"])
    assert has_permission(session, seed.users["manager"], "submission.approve") is True
    assert has_permission(session, seed.users["user"], "submission.approve") is False


def test_user_a_granted_override_does_not_touch_role(session, seed):
    a = seed.users["user"]
    assert has_permission(session, a, "procedure.view") is True
    assert has_permission(session, a, "procedure.approve") is False

    grant_permission(session, a, "procedure.approve", actor_id=seed.users["admin"])

    assert has_permission(session, a, "procedure.approve") is True
    assert "procedure.approve" in resolve_permissions(session, a)
    assert "procedure.approve" not in role_baseline(session, seed.roles["USER"])
    assert has_permission(session, seed.users["other"], "procedure.approve") is False


def test_revoke_override_beats_role_baseline(session, seed):
    m = seed.users["manager"]
    revoke_permission(session, m, "submission.approve", actor_id=seed.users["admin"])

    assert has_permission(session, m, "submission.approve") is False
    assert "submission.approve" not in resolve_permissions(session, m)
    assert "submission.approve" in role_baseline(session, seed.roles["MANAGER"])


def test_override_updates_in_place(session, seed):
    u = seed.users["user"]
    grant_permission(session, u, "report.export", actor_id=None)
    revoke_permission(session, u, "report.export", actor_id=None)

    rows = list_overrides(session, u)
    assert len(rows) == 1
    assert rows[0].is_granted is False
    assert rows[0].updated_at is not None
    assert has_permission(session, u, "report.export") is False

    assert remove_override(session, u, "report.export", actor_id=None) is True
    assert remove_override(session, u, "report.export", actor_id=None) is False
    assert session.query(UserPermissionOverride).count() == 0


def test_repeated_grant_is_a_noop_and_audited_once(session, seed):
    u = seed.users["user"]
    grant_permission(session, u, "report.export", actor_id=seed.users["admin"])
    grant_permission(session, u, "report.export", actor_id=seed.users["admin"])

    events = session.query(AuditEvent).filter(AuditEvent.action == "permission.grant").all()
    assert len(events) == 1
    assert events[0].target_id == str(u)
    assert events[0].actor_user_id == seed.users["admin"]


def test_inactive_user_has_no_permissions(session, seed):
    u = seed.users["manager"]
    grant_permission(session, u, "system.manage", actor_id=None)
    session.get(User, u).is_active = False
    session.commit()

    assert resolve_permissions(session, u) == set()
    for code in catalog.codes():
        assert has_permission(session, u, code) is False


def test_unknown_user_and_code(session, seed):
    with pytest.raises(NotFound):
        resolve_permissions(session, 999_999)
    with pytest.raises(NotFound):
        has_permission(session, 999_999, "procedure.view")
    assert has_permission(session, seed.users["user"], "procedure.nonexistent") is False
    with pytest.raises(NotFound):
        grant_permission(session, seed.users["user"], "procedure.nonexistent", actor_id=None)


def test_role_change_is_visible_on_next_check(session, seed):
    u = seed.users["user"]
    assert has_permission(session, u, "report.export") is False
    codes = sorted(catalog.ROLE_BASELINES["USER"] | {"report.export"})
    set_role_permissions(session, seed.roles["USER"], codes, actor_id=seed.users["admin"])
    assert has_permission(session, u, "report.export") is True

    with pytest.raises(NotFound):
        set_role_permissions(session, seed.roles["USER"], ["report.bogus"], actor_id=None)
    assert has_permission(session, u, "report.export") is True


def test_system_roles_are_protected(session, seed):
    with pytest.raises(Forbidden):
        rename_role(session, seed.roles["USER"], name="Crew", actor_id=None)
    with pytest.raises(Forbidden):
        delete_role(session, seed.roles["ADMIN"], actor_id=None)


def test_custom_role_rename_and_delete(session, seed):
    role = Role(code="AUDITOR", name="Auditor", is_system_role=False)
    session.add(role)
    session.commit()
    set_role_permissions(session, role.id, ["audit.view"], actor_id=None)

    assert rename_role(session, role.id, name="External Auditor", actor_id=None).name == "External Auditor"
    with pytest.raises(ValidationError):
        rename_role(session, role.id, name="  ", actor_id=None)

    user = session.get(User, seed.users["other"])
    user.role_id = role.id
    session.commit()
    with pytest.raises(ValidationError):
        delete_role(session, role.id, actor_id=None)

    user.role_id = seed.roles["USER"]
    session.commit()
    delete_role(session, role.id, actor_id=None)
    assert session.get(Role, role.id) is None
