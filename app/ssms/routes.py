from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Touches the database; returns JSON."""
    engine = current_app.extensions["sqlalchemy_engine"]
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        current_app.logger.exception("Health check: database unreachable")
        db_ok = False
    return jsonify({"ok": db_ok, "database": "ok" if db_ok else "unreachable"}), (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access, minimal overhead.
    """
    return "ok", 200
