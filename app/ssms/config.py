import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    jwt_secret_key: str
    jwt_access_expires: int

    audit_mode: str
    audit_max_attempts: int
    recall_window_minutes: int

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///ssms.db"),
        jwt_secret_key=_getenv("JWT_SECRET_KEY", ""),
        jwt_access_expires=_getenv_int("JWT_ACCESS_EXPIRES", 900),
        audit_mode=_getenv("AUDIT_MODE", "async").lower(),
        audit_max_attempts=_getenv_int("AUDIT_MAX_ATTEMPTS", 3),
        recall_window_minutes=_getenv_int("RECALL_WINDOW_MINUTES", 0),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    if s.audit_mode not in ("async", "sync"):
        raise RuntimeError(f"AUDIT_MODE must be 'async' or 'sync' (got {s.audit_mode!r}).")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        # falls back to SECRET_KEY when unset
        "JWT_SECRET_KEY": s.jwt_secret_key or s.secret_key,
        "JWT_ACCESS_EXPIRES": s.jwt_access_expires,
        "AUDIT_MODE": s.audit_mode,
        "AUDIT_MAX_ATTEMPTS": max(1, s.audit_max_attempts),
        "RECALL_WINDOW_MINUTES": max(0, s.recall_window_minutes),
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "JSON_SORT_KEYS": False,
        # attachment upload limit (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
