"""
auth/errors.py -- Failure taxonomy for the auth core.

Every operation in auth/service.py either returns a result or raises one of
these. The boundary layer (api/) maps `code` onto an HTTP status; the core
never knows about status codes.

UnauthorizedError carries an internal `reason`. The reason is logged but the
boundary answers every UnauthorizedError with the same generic message, so a
caller cannot tell "no such user" from "wrong password", or "revoked" from
"expired".

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class UnauthorizedReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    EXPIRED = "expired"
    REVOKED = "revoked"
    MALFORMED = "malformed"
    WRONG_KIND = "wrong_kind"
    SUBJECT_MISMATCH = "subject_mismatch"


class AuthError(Exception):
    """Base class for all typed auth failures."""

    code = "auth_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidInputError(AuthError):
    """A field is malformed or out of range. `field` names the offending input."""

    code = "invalid_input"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class ConflictError(AuthError):
    code = "conflict"


class AlreadyExistsError(ConflictError):
    """Registration found a user with the same normalized email."""


class NotFoundError(AuthError):
    code = "not_found"


class UnauthorizedError(AuthError):
    code = "unauthorized"

    def __init__(self, reason: UnauthorizedReason, message: str = "") -> None:
        super().__init__(message or f"Unauthorized ({reason.value})")
        self.reason = reason


class InvalidCredentialsError(UnauthorizedError):
    def __init__(self) -> None:
        super().__init__(UnauthorizedReason.INVALID_CREDENTIALS, "Invalid email or password.")


class StoreFailureError(AuthError):
    """Transient persistence failure. Not retried inside the core."""

    code = "store_failure"
