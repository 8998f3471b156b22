from datetime import datetime, timedelta


def test_audit_log_listing_and_filters(client, auth_headers, seed):
    user, admin = auth_headers("user"), auth_headers("admin")
    r = client.post("/submissions", json={"title": "Bunkering checklist"}, headers=user)
    assert r.status_code == 201
    sub_id = r.json["id"]

    assert client.get("/audit-logs", headers=user).status_code == 403
    assert client.get("/audit-logs").status_code == 401

    r = client.get("/audit-logs", headers=admin)
    assert r.status_code == 200
    actions = [e["action"] for e in r.json["items"]]
    assert actions == ["submission.create", "auth.login", "auth.login"]
    assert r.json["total"] == len(actions)

    r = client.get("/audit-logs", query_string={"action": "submission.create"}, headers=admin)
    (event,) = r.json["items"]
    assert event["target_id"] == str(sub_id)
    assert event["actor_user_id"] == seed.users["user"]
    assert event["metadata"]["submission_code"].startswith("SUB-")

    r = client.get("/audit-logs", query_string={"actor_user_id": seed.users["admin"]}, headers=admin)
    assert {e["action"] for e in r.json["items"]} == {"auth.login"}

    today = datetime.utcnow().date()
    r = client.get("/audit-logs", query_string={"date_from": today.isoformat()}, headers=admin)
    assert r.json["total"] == len(actions)
    r = client.get("/audit-logs", query_string={"date_to": (today - timedelta(days=1)).isoformat()}, headers=admin)
    assert r.json["items"] == []


def test_audit_log_paging_and_bad_params(client, auth_headers):
    admin = auth_headers("admin")
    for _ in range(2):
        auth_headers("user")

    r = client.get("/audit-logs", query_string={"page_size": 2, "page": 2}, headers=admin)
    assert r.json["page"] == 2
    assert r.json["page_size"] == 2
    assert len(r.json["items"]) == 1
    assert r.json["total"] == 3

    assert client.get("/audit-logs", query_string={"page_size": 1000}, headers=admin).json["page_size"] == 100
    assert client.get("/audit-logs", query_string={"date_from": "19-10-2026"}, headers=admin).status_code == 400
    assert client.get("/audit-logs", query_string={"page": "two"}, headers=admin).status_code == 400


def test_audit_type_listings(client, auth_headers):
    officer = auth_headers("officer")
    client.post("/auth/login", json={"email": "user@example.com", "password": "wrong"})

    r = client.get("/audit-logs/action-types", headers=officer)
    assert r.status_code == 200
    assert r.json["items"] == ["auth.login", "auth.login_failed"]

    r = client.get("/audit-logs/target-types", headers=officer)
    assert r.json["items"] == ["User"]
