from app.ssms.db import session_scope
from app.ssms.models import Role, RolePermission


def test_check_endpoint(client, auth_headers):
    assert client.get("/permissions/check/procedure.view").status_code == 401

    user = auth_headers("user")
    r = client.get("/permissions/check/procedure.view", headers=user)
    assert r.status_code == 200
    assert r.json == {"code": "procedure.view", "granted": True}
    assert client.get("/permissions/check/submission.approve", headers=user).json["granted"] is False
    assert client.get("/permissions/check/procedure.nonexistent", headers=user).json["granted"] is False
    assert client.get("/permissions/check/NotACode", headers=user).status_code == 400


def test_listing(client, auth_headers):
    user = auth_headers("user")
    flat = client.get("/permissions", headers=user).json["items"]
    assert "submission.approve" in {p["code"] for p in flat}

    grouped = client.get("/permissions/grouped", headers=user).json["modules"]
    modules = {g["module"]: {p["code"] for p in g["permissions"]} for g in grouped}
    assert "audit.ops.view" in modules["Audit"]
    assert sum(len(v) for v in modules.values()) == len(flat)

    me = client.get("/permissions/me", headers=user).json
    assert "procedure.view" in me["permissions"]


def test_override_management(client, auth_headers, seed):
    admin, user = auth_headers("admin"), auth_headers("user")
    url = f"/users/{seed.users['user']}/permissions"

    assert client.get(url, headers=user).status_code == 403

    r = client.put(f"{url}/procedure.approve", json={"granted": True}, headers=admin)
    assert r.status_code == 200
    assert r.json["is_granted"] is True
    assert client.get("/permissions/check/procedure.approve", headers=user).json["granted"] is True

    r = client.put(f"{url}/procedure.view", json={"granted": False}, headers=admin)
    assert r.status_code == 200
    assert client.get("/permissions/check/procedure.view", headers=user).json["granted"] is False

    r = client.get(url, headers=admin)
    assert {o["code"]: o["is_granted"] for o in r.json["overrides"]} == {
        "procedure.approve": True,
        "procedure.view": False,
    }
    assert "procedure.approve" in r.json["effective"]
    assert "procedure.view" not in r.json["effective"]

    assert client.delete(f"{url}/procedure.view", headers=admin).json == {"removed": True}
    assert client.get("/permissions/check/procedure.view", headers=user).json["granted"] is True

    assert client.put(f"{url}/procedure.view", json={"granted": "yes"}, headers=admin).status_code == 400
    assert client.put(f"{url}/procedure.bogus", json={"granted": True}, headers=admin).status_code == 404
    assert client.get("/users/999999/permissions", headers=admin).status_code == 404


def test_role_baseline_replacement(client, auth_headers, app, seed):
    admin = auth_headers("admin")
    url = f"/roles/{seed.roles['USER']}/permissions"

    assert client.put(url, json={"codes": ["procedure.view"]}, headers=auth_headers("manager")).status_code == 403
    assert client.put(url, json={"codes": "procedure.view"}, headers=admin).status_code == 400
    assert client.put(url, json={"codes": ["procedure.bogus"]}, headers=admin).status_code == 404

    r = client.put(url, json={"codes": ["procedure.view", "submission.create"]}, headers=admin)
    assert r.status_code == 200
    assert r.json["codes"] == ["procedure.view", "submission.create"]

    with session_scope(app) as s:
        rows = s.query(RolePermission).filter(RolePermission.role_id == seed.roles["USER"]).count()
    assert rows == 2
    user = auth_headers("user")
    assert client.get("/permissions/check/report.view", headers=user).json["granted"] is False


def test_system_role_cannot_be_renamed_or_deleted(client, auth_headers, app, seed):
    admin = auth_headers("admin")
    assert client.patch(f"/roles/{seed.roles['USER']}", json={"name": "Crew"}, headers=admin).status_code == 403
    assert client.delete(f"/roles/{seed.roles['ADMIN']}", headers=admin).status_code == 403

    with session_scope(app) as s:
        role = Role(code="INSPECTOR", name="Inspector", is_system_role=False)
        s.add(role)
        s.flush()
        role_id = role.id

    assert client.patch(f"/roles/{role_id}", json={"name": 42}, headers=admin).status_code == 400
    r = client.patch(f"/roles/{role_id}", json={"name": "Flag Inspector"}, headers=admin)
    assert r.status_code == 200
    assert r.json["name"] == "Flag Inspector"
    assert client.delete(f"/roles/{role_id}", headers=admin).status_code == 200
    assert client.delete(f"/roles/{role_id}", headers=admin).status_code == 404
