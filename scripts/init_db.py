import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ssms.models import Role, Unit, User  # noqa: E402
from app.ssms.permissions.catalog import ROLE_ADMIN, sync_catalog  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the permission catalog, system roles, a root unit and the admin user.
    Idempotent. Does NOT overwrite an existing admin user's password or role baselines.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@ssms.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    root_unit_code = (os.environ.get("ROOT_UNIT_CODE") or "HQ").strip().upper()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///ssms.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        sync_catalog(s)

        root = s.query(Unit).filter(Unit.code == root_unit_code).one_or_none()
        if not root:
            root = Unit(code=root_unit_code, name="Head Office", type="Department", is_active=True)
            s.add(root)
            s.flush()

        role_admin = s.query(Role).filter(Role.code == ROLE_ADMIN).one()
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                full_name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role_id=role_admin.id,
                unit_id=root.id,
                is_active=True,
            )
            s.add(user)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
