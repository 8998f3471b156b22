from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import jwt
from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.security import check_password_hash

from app.ssms.audit import emit_event
from app.ssms.db import db_session
from app.ssms.errors import Unauthenticated, ValidationError
from app.ssms.models import User
from app.ssms.permissions.resolver import resolve_permissions
from app.ssms.rbac import Identity, require_identity

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

ALGORITHM = "HS256"
_SKIP_PREFIXES = ("/static/", "/health", "/healthz")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def issue_access_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.code,
        "unit_id": user.unit_id,
        "active": bool(user.is_active),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=int(current_app.config["JWT_ACCESS_EXPIRES"])),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET_KEY"], algorithm=ALGORITHM)


def decode_access_token(token: str) -> Identity:
    """
    Verify signature/expiry and turn the claims into an Identity.
    Raises jwt.InvalidTokenError on any problem.
    """
    payload = jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("not an access token")
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError) as e:
        raise jwt.InvalidTokenError("bad subject") from e
    unit_id = payload.get("unit_id")
    return Identity(
        user_id=user_id,
        role_code=str(payload.get("role") or ""),
        unit_id=int(unit_id) if unit_id is not None else None,
        is_active=bool(payload.get("active", False)),
        email=payload.get("email"),
    )


def load_current_identity() -> None:
    """
    Loads g.identity from the Bearer token (None when absent or invalid).
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.identity = None
    if request.path.startswith(_SKIP_PREFIXES):
        return

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return
    token = header[len("Bearer "):].strip()
    try:
        g.identity = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        current_app.logger.info("Expired token (request_id=%s)", g.request_id)
    except jwt.InvalidTokenError as e:
        current_app.logger.warning("Invalid token (request_id=%s): %s", g.request_id, e)


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    ip = request.remote_addr or "unknown"

    if not email or not password:
        raise ValidationError("email and password are required.")

    if _check_rate_limit(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        emit_event(
            actor_user_id=None,
            action="auth.login_failed",
            target_type="User",
            target_id=email,
            reason="Invalid credentials",
        )
        raise Unauthenticated("Invalid credentials.")

    _login_attempts[ip].clear()
    token = issue_access_token(user)
    emit_event(actor_user_id=user.id, action="auth.login", target_type="User", target_id=user.id)
    return jsonify(
        {
            "access_token": token,
            "token_type": "Bearer",
            "expires_in": int(current_app.config["JWT_ACCESS_EXPIRES"]),
        }
    )


@bp.get("/me")
def me():
    ident = require_identity()
    s = db_session()
    return jsonify(
        {
            "user_id": ident.user_id,
            "email": ident.email,
            "role": ident.role_code,
            "unit_id": ident.unit_id,
            "permissions": sorted(resolve_permissions(s, ident.user_id)),
        }
    )
