import io

from app.ssms.db import session_scope
from app.ssms.models import AuditEvent
from app.ssms.modules.submissions.models import Procedure, SubmissionFile


def _create(client, headers, **payload):
    payload.setdefault("title", "Enclosed space entry permit")
    r = client.post("/submissions", json=payload, headers=headers)
    assert r.status_code == 201, r.json
    return r.json


def test_create_and_view(client, auth_headers, seed):
    user = auth_headers("user")
    body = _create(client, user, content="Tank 3 inspection", recipients=[{"unit_id": seed.units["FLEET"]}])

    assert body["status"] == "Submitted"
    assert body["unit_id"] == seed.units["SHIP1"]
    assert body["can_recall"] is True
    assert body["can_approve"] is False
    assert body["decision"] is None
    assert body["recipients"][0]["unit_id"] == seed.units["FLEET"]

    r = client.get("/submissions/mine", headers=user)
    assert [s["id"] for s in r.json["items"]] == [body["id"]]

    manager = auth_headers("manager")
    r = client.get(f"/submissions/{body['id']}", headers=manager)
    assert r.status_code == 200
    assert r.json["can_approve"] is True
    assert r.json["can_recall"] is False

    r = client.get("/submissions/inbox", headers=manager)
    assert [s["id"] for s in r.json["items"]] == [body["id"]]
    assert r.json["items"][0]["delivery"]["is_read"] is False

    r = client.get(f"/submissions/{body['id']}", headers=auth_headers("other"))
    assert r.status_code == 403


def test_create_validation_and_auth(client, auth_headers, seed):
    assert client.post("/submissions", json={"title": "x"}).status_code == 401

    user = auth_headers("user")
    r = client.post("/submissions", json={"title": "  "}, headers=user)
    assert r.status_code == 400
    r = client.post("/submissions", json={"title": "t", "recipients": [{"unit_id": 999_999}]}, headers=user)
    assert r.status_code == 400
    assert r.json["errors"]
    r = client.post("/submissions", json={"title": "t", "procedure_id": 999_999}, headers=user)
    assert r.status_code == 404
    r = client.post("/submissions", json=["not", "an", "object"], headers=user)
    assert r.status_code == 400


def test_non_string_fields_are_rejected(client, auth_headers, seed):
    user, manager = auth_headers("user"), auth_headers("manager")

    assert client.post("/submissions", json={"title": 42}, headers=user).status_code == 400
    r = client.post(
        "/submissions", json={"title": "t", "recipients": [{"unit_id": seed.units["FLEET"], "type": 5}]}, headers=user
    )
    assert r.status_code == 400
    assert r.json["error"] == "validation"
    assert client.get("/submissions/mine", headers=user).json["items"] == []

    sub = _create(client, user)
    url = f"/submissions/{sub['id']}"
    assert client.post(f"{url}/reject", json={"note": 123}, headers=manager).status_code == 400
    assert client.post(f"{url}/approve", json={"note": ["x"]}, headers=manager).status_code == 400
    assert client.post(f"{url}/recall", json={"reason": 12345678901}, headers=user).status_code == 400

    r = client.get(url, headers=user)
    assert r.json["status"] == "Submitted"
    assert r.json["version"] == 1


def test_create_requires_permission(client, auth_headers, app, seed):
    from app.ssms.permissions.resolver import revoke_permission

    with app.app_context(), session_scope(app) as s:
        revoke_permission(s, seed.users["user"], "submission.create", actor_id=None)

    r = client.post("/submissions", json={"title": "t"}, headers=auth_headers("user"))
    assert r.status_code == 403
    assert r.json["required"] == "permission submission.create"


def test_procedure_approver_becomes_designated(client, auth_headers, app, seed):
    with session_scope(app) as s:
        p = Procedure(code="PRC-001", name="Hot work", unit_id=seed.units["SHIP1"], approver_user_id=seed.users["officer"])
        s.add(p)
        s.flush()
        procedure_id = p.id

    body = _create(client, auth_headers("user"), procedure_id=procedure_id)
    assert body["designated_approver_user_id"] == seed.users["officer"]

    r = client.get("/approvals/pending", headers=auth_headers("officer"))
    assert [s["id"] for s in r.json["items"]] == [body["id"]]
    r = client.get("/approvals/pending", headers=auth_headers("manager"))
    assert r.json["items"] == []


def test_approve_reject_recall_status_codes(client, auth_headers):
    user, manager = auth_headers("user"), auth_headers("manager")

    a = _create(client, user)
    r = client.post(f"/submissions/{a['id']}/approve", json={"note": "ok"}, headers=auth_headers("manager2"))
    assert r.status_code == 403
    r = client.post(f"/submissions/{a['id']}/approve", json={"note": "ok"}, headers=manager)
    assert r.status_code == 200
    assert r.json["status"] == "Approved"
    assert r.json["decision"]["action"] == "Approve"
    assert client.post(f"/submissions/{a['id']}/approve", json={}, headers=manager).status_code == 409
    r = client.post(f"/submissions/{a['id']}/recall", json={"reason": "Wrong form attached"}, headers=user)
    assert r.status_code == 409
    assert r.json["status"] == "Approved"

    b = _create(client, user)
    assert client.post(f"/submissions/{b['id']}/reject", json={"note": ""}, headers=manager).status_code == 400
    r = client.post(f"/submissions/{b['id']}/reject", json={"note": "Missing photos"}, headers=manager)
    assert r.status_code == 200
    assert r.json["decision"]["note"] == "Missing photos"

    c = _create(client, user)
    r = client.post(f"/submissions/{c['id']}/recall", json={"reason": "no"}, headers=user)
    assert r.status_code == 400
    r = client.get(f"/submissions/{c['id']}", headers=user)
    assert r.json["status"] == "Submitted"
    r = client.post(f"/submissions/{c['id']}/recall", json={"reason": "Submitted twice"}, headers=user)
    assert r.status_code == 200
    assert r.json["status"] == "Recalled"

    assert client.post("/submissions/999999/approve", json={}, headers=manager).status_code == 404
    assert client.post(f"/submissions/{c['id']}/approve", json={}).status_code == 401


def test_transitions_are_audited(client, auth_headers, app):
    user = auth_headers("user")
    a = _create(client, user)
    client.post(f"/submissions/{a['id']}/recall", json={"reason": "Submitted twice"}, headers=user)

    with session_scope(app) as s:
        events = s.query(AuditEvent).filter(AuditEvent.target_type == "Submission").order_by(AuditEvent.id).all()
        assert [e.action for e in events] == ["submission.create", "submission.recall"]
        assert events[1].reason == "Submitted twice"
        assert events[1].request_id


def test_mark_read_endpoint(client, auth_headers, seed):
    body = _create(client, auth_headers("user"), recipients=[{"unit_id": seed.units["FLEET"]}])
    url = f"/submissions/{body['id']}/recipients/{seed.units['FLEET']}/read"

    manager = auth_headers("manager")
    r = client.post(url, headers=manager)
    assert r.status_code == 200
    assert r.json["is_read"] is True
    assert client.post(url, headers=manager).status_code == 200
    assert client.post(url, headers=auth_headers("other")).status_code == 403


def test_attachment_upload_and_download(client, auth_headers, app):
    user = auth_headers("user")
    body = _create(client, user)

    r = client.post(
        f"/submissions/{body['id']}/files",
        data={"file": (io.BytesIO(b"checklist bytes"), "check list.pdf")},
        content_type="multipart/form-data",
        headers=user,
    )
    assert r.status_code == 201
    file_id = r.json["id"]
    assert r.json["filename"] == "check_list.pdf"
    assert r.json["size_bytes"] == len(b"checklist bytes")

    with session_scope(app) as s:
        row = s.get(SubmissionFile, file_id)
        assert row.storage_key.startswith(f"submissions/{body['submission_code']}/")

    r = client.get(f"/submissions/files/{file_id}", headers=auth_headers("manager"))
    assert r.status_code == 200
    assert r.data == b"checklist bytes"
    r.close()

    assert client.get(f"/submissions/files/{file_id}", headers=auth_headers("other")).status_code == 403

    r = client.post(
        f"/submissions/{body['id']}/files",
        data={"file": (io.BytesIO(b"x"), "x.txt")},
        content_type="multipart/form-data",
        headers=auth_headers("manager"),
    )
    assert r.status_code == 403
