"""Error types raised by the studylib service layer.

The API maps each type to an HTTP status at the boundary.
"""

from __future__ import annotations


class StudylibError(Exception):
    """Base class for errors that map to a client-facing response."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(StudylibError):
    """Malformed input. Carries field-level detail."""

    status_code = 400

    def __init__(self, message: str, errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(message, [{"field": field, "message": message}])


class AuthenticationFailed(StudylibError):
    status_code = 401


class PermissionDenied(StudylibError):
    status_code = 403


class NotFound(StudylibError):
    status_code = 404


class Conflict(StudylibError):
    status_code = 409
