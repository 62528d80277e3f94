"""
Error types shared by the store, the authenticator and the web layer.

Every error carries the HTTP status it maps to and a message that is safe to
show to end users.
"""

from typing import Any, Dict, Optional


class TrackerError(Exception):
    """Base class for all expected failures."""

    status = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class InvalidCredentials(TrackerError):
    status = 401
    default_message = "Invalid password"


class Unauthorized(TrackerError):
    status = 401
    default_message = "Authentication required"


class InvalidOrExpiredToken(TrackerError):
    status = 401
    default_message = "Invalid or expired QR code token"


class ConstraintViolation(TrackerError):
    """A write the store refused because it breaks a declared invariant."""

    status = 409
    default_message = "Constraint violation"


class ValidationError(ConstraintViolation):
    status = 400
    default_message = "Invalid input"


class NotFound(ConstraintViolation):
    status = 404
    default_message = "Not found"


class AlreadyExists(ConstraintViolation):
    status = 409
    default_message = "Already exists"


class HasDependents(ConstraintViolation):
    status = 409
    default_message = "Cannot delete record with existing scores"

    def __init__(self, message: Optional[str] = None, count: int = 0) -> None:
        super().__init__(message)
        self.count = count

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["score_count"] = self.count
        return body


class StorageUnavailable(TrackerError):
    status = 500
    default_message = "Internal server error"
