from __future__ import annotations

from typing import Any


class TimetableError(Exception):
    """Base class for domain-rule failures surfaced to callers."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None, *, details: dict[str, Any] | None = None):
        self.code = code
        self.message = message or code.replace("_", " ")
        self.details = details or {}
        super().__init__(f"{code}: {self.message}")

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(TimetableError):
    """Raised for malformed constraints, empty grids and dangling references."""

    status_code = 422


class ConflictError(TimetableError):
    """Raised when the request clashes with current state (running job, unresolved conflicts, stale data)."""

    status_code = 409


class NotFoundError(TimetableError):
    """Raised for unknown job, version, conflict or constraint ids."""

    status_code = 404
