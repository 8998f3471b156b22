import pytest

from app.ssms.config import load_config
from app.ssms.storage import LocalStorage, StorageError, storage_from_config, submission_file_key


def test_local_storage_roundtrip_and_escape(tmp_path):
    st = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_ROOT": str(tmp_path)})
    assert isinstance(st, LocalStorage)

    st.put_bytes("submissions/SUB-1/abc-file.txt", b"data")
    assert st.exists("submissions/SUB-1/abc-file.txt")
    with st.open("submissions/SUB-1/abc-file.txt") as f:
        assert f.read() == b"data"

    with pytest.raises(StorageError):
        st.open("submissions/missing.txt")
    with pytest.raises(StorageError):
        st.put_bytes("../outside.txt", b"x")


def test_submission_file_key_sanitizes_filename():
    key = submission_file_key("SUB-20260101-001", "a" * 64, "../../etc/passwd")
    assert key == f"submissions/SUB-20260101-001/{'a' * 12}-etc_passwd"
    assert submission_file_key("SUB-1", "b" * 64, "").endswith("-attachment.bin")


def test_config_defaults_and_validation(monkeypatch):
    for k in ("JWT_SECRET_KEY", "AUDIT_MODE", "RECALL_WINDOW_MINUTES", "JWT_ACCESS_EXPIRES"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("SECRET_KEY", "s3cret")

    cfg = load_config()
    assert cfg["JWT_SECRET_KEY"] == "s3cret"
    assert cfg["AUDIT_MODE"] == "async"
    assert cfg["RECALL_WINDOW_MINUTES"] == 0
    assert cfg["JWT_ACCESS_EXPIRES"] == 900

    monkeypatch.setenv("AUDIT_MODE", "later")
    with pytest.raises(RuntimeError):
        load_config()

    monkeypatch.setenv("AUDIT_MODE", "sync")
    monkeypatch.setenv("RECALL_WINDOW_MINUTES", "soon")
    with pytest.raises(RuntimeError):
        load_config()


def test_production_guardrails(tmp_path, monkeypatch):
    from app.ssms import create_app

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "change-me")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError):
        create_app()
