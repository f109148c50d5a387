"""Error taxonomy shared by the stores, services and transports.

Every error carries a stable ``code`` string and the HTTP status used when it
crosses the HTTP boundary. Channel transports reuse the same ``code`` inside
``error`` frames.
"""

from __future__ import annotations


class DuetError(Exception):
    """Base class for errors reported to callers."""

    code = "error"
    status = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(DuetError):
    code = "invalid_request"
    status = 400


class InvalidPayload(ValidationError):
    code = "invalid_payload"


class AuthError(DuetError):
    code = "unauthorized"
    status = 401


class Forbidden(DuetError):
    code = "forbidden"
    status = 403


class NotFound(DuetError):
    code = "not_found"
    status = 404


class NoCounterpart(NotFound):
    code = "no_counterpart"


class UsernameTaken(DuetError):
    code = "username_taken"
    status = 409


class CapacityExceeded(DuetError):
    code = "capacity_exceeded"
    status = 403


class AlreadyPaired(DuetError):
    code = "already_paired"
    status = 409


class ConflictingPairing(DuetError):
    code = "conflicting_pairing"
    status = 409


class UploadError(DuetError):
    code = "upload_failed"
    status = 400


class PushFailed(DuetError):
    """Raised when a frame cannot be written to a live connection."""

    code = "push_failed"
    status = 503
