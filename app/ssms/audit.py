"""
Audit sink adapter.

Workflow code calls ``emit_event`` after its transaction has committed. The
record is handed to the app's ``AuditSink``, which writes an ``AuditEvent`` row
in its own session. In "async" mode a daemon worker drains a queue; in "sync"
mode the write happens inline. Either way a sink failure is logged and never
reaches the caller.
"""
from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flask import Flask, current_app, g, has_request_context, request

from app.ssms.models import AuditEvent

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class AuditRecord:
    actor_user_id: int | None
    action: str
    target_type: str | None = None
    target_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: str | None = None
    metadata: dict[str, Any] | None = None
    request_id: str | None = None
    client_ip: str | None = None


def database_writer(session_factory) -> Callable[[AuditRecord], None]:
    def write(rec: AuditRecord) -> None:
        s = session_factory()
        try:
            s.add(
                AuditEvent(
                    created_at=rec.timestamp,
                    request_id=rec.request_id,
                    actor_user_id=rec.actor_user_id,
                    action=rec.action,
                    target_type=rec.target_type,
                    target_id=rec.target_id,
                    reason=rec.reason,
                    metadata_json=json.dumps(rec.metadata, sort_keys=True, default=str) if rec.metadata else None,
                    client_ip=rec.client_ip,
                )
            )
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    return write


class AuditSink:
    def __init__(
        self,
        writer: Callable[[AuditRecord], None],
        *,
        mode: str = "async",
        max_attempts: int = 3,
    ) -> None:
        self.writer = writer
        self.mode = mode
        self.max_attempts = max(1, max_attempts)
        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    def emit(self, rec: AuditRecord) -> None:
        if self.mode == "sync":
            self._deliver(rec)
            return
        self._ensure_worker()
        self._queue.put(rec)

    def flush(self, timeout: float | None = None) -> bool:
        """Block until every queued record was handled. Returns False on timeout."""
        if self.mode == "sync":
            return True
        if timeout is None:
            self._queue.join()
            return True
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(_STOP)
        worker.join(timeout)

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="audit-sink", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, rec: AuditRecord) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.writer(rec)
                return True
            except Exception:
                if attempt == self.max_attempts:
                    logger.exception(
                        "Audit sink dropped event action=%s target=%s:%s after %d attempts",
                        rec.action,
                        rec.target_type,
                        rec.target_id,
                        attempt,
                    )
                else:
                    logger.warning("Audit sink write failed (attempt %d/%d) action=%s", attempt, self.max_attempts, rec.action)
        return False


def init_audit(app: Flask) -> AuditSink:
    sink = AuditSink(
        database_writer(app.extensions["sqlalchemy_sessionmaker"]),
        mode=app.config.get("AUDIT_MODE", "async"),
        max_attempts=int(app.config.get("AUDIT_MAX_ATTEMPTS", 3)),
    )
    app.extensions["audit_sink"] = sink
    return sink


def audit_sink(app: Flask | None = None) -> AuditSink:
    app = app or current_app
    return app.extensions["audit_sink"]


def emit_event(
    *,
    actor_user_id: int | None,
    action: str,
    target_type: str | None = None,
    target_id: str | int | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """
    Fire-and-forget audit record for the current request. Never raises.
    """
    try:
        rid = getattr(g, "request_id", None) if has_request_context() else None
        ip = request.remote_addr if has_request_context() else None
        rec = AuditRecord(
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            reason=reason,
            metadata=metadata,
            request_id=rid,
            client_ip=ip,
        )
        audit_sink().emit(rec)
    except Exception:
        logger.exception("Audit emit failed (action=%s)", action)
