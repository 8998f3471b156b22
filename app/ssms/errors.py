"""
Error taxonomy shared by the gate, the resolver and the workflow.

Services raise these; ``create_app`` maps them to JSON responses.
"""
from __future__ import annotations

from typing import Any


class SSMSError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out.update(self.details)
        return out


class Unauthenticated(SSMSError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(SSMSError):
    status_code = 403
    code = "forbidden"


class NotFound(SSMSError):
    status_code = 404
    code = "not_found"


class Conflict(SSMSError):
    """A transition was attempted on a submission that already left Submitted."""

    status_code = 409
    code = "conflict"


class ValidationError(SSMSError):
    status_code = 400
    code = "validation"
