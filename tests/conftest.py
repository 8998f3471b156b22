from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.ssms import create_app
from app.ssms import auth as auth_module
from app.ssms.audit import audit_sink
from app.ssms.db import session_scope
from app.ssms.models import Base, Role, Unit, User
from app.ssms.permissions.catalog import sync_catalog
from app.ssms.rbac import Identity

PASSWORD = "pw"

# email -> (role code, unit code)
USERS = {
    "admin@example.com": ("ADMIN", "HQ"),
    "manager@example.com": ("MANAGER", "FLEET"),
    "manager2@example.com": ("MANAGER", "SHIP2"),
    "captain@example.com": ("CAPTAIN", "SHIP1"),
    "officer@example.com": ("SAFETY_OFFICER", "SHIP1"),
    "user@example.com": ("USER", "SHIP1"),
    "other@example.com": ("USER", "SHIP2"),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("AUDIT_MODE", "sync")
    for k in ("JWT_SECRET_KEY", "JWT_ACCESS_EXPIRES", "RECALL_WINDOW_MINUTES", "AUDIT_MAX_ATTEMPTS"):
        monkeypatch.delenv(k, raising=False)
    auth_module._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        sync_catalog(s)
        hq = Unit(code="HQ", name="Head Office", type="Department")
        s.add(hq)
        s.flush()
        fleet = Unit(code="FLEET", name="Fleet Operations", type="Department", parent_unit_id=hq.id)
        s.add(fleet)
        s.flush()
        s.add_all(
            [
                Unit(code="SHIP1", name="MV Northern Star", type="Ship", parent_unit_id=fleet.id),
                Unit(code="SHIP2", name="MV Southern Cross", type="Ship", parent_unit_id=fleet.id),
            ]
        )
        s.flush()
        roles = {r.code: r.id for r in s.query(Role).all()}
        units = {u.code: u.id for u in s.query(Unit).all()}
        for email, (role_code, unit_code) in USERS.items():
            s.add(
                User(
                    email=email,
                    full_name=email.split("@")[0].title(),
                    password_hash=generate_password_hash(PASSWORD),
                    role_id=roles[role_code],
                    unit_id=units[unit_code],
                    is_active=True,
                )
            )

    yield app

    audit_sink(app).close()
    engine.dispose()


@pytest.fixture()
def seed(app):
    """Ids of the seeded units, roles and users (users keyed by the local part of the email)."""
    with session_scope(app) as s:
        return SimpleNamespace(
            units={u.code: u.id for u in s.query(Unit).all()},
            roles={r.code: r.id for r in s.query(Role).all()},
            users={u.email.split("@")[0]: u.id for u in s.query(User).all()},
        )


@pytest.fixture()
def session(app):
    """Plain session inside an app context (the audit sink and config need one)."""
    with app.app_context():
        s = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            yield s
        finally:
            s.close()


def identity_for(app, email: str) -> Identity:
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == email).one()
        return Identity(
            user_id=u.id,
            role_code=u.role.code,
            unit_id=u.unit_id,
            is_active=u.is_active,
            email=u.email,
        )


@pytest.fixture()
def ident(app):
    """ident("user") -> Identity of user@example.com as the token would carry it."""
    return lambda name: identity_for(app, f"{name}@example.com")


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email: str, password: str = PASSWORD) -> dict:
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return {"Authorization": f"Bearer {r.json['access_token']}"}


@pytest.fixture()
def auth_headers(client):
    """auth_headers("manager") -> Authorization header for manager@example.com."""
    return lambda name: login(client, f"{name}@example.com")
