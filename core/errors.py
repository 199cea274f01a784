"""
core/errors.py -- Typed error taxonomy shared by the auth core and the API.

Every failure path in the core raises a PortalError subclass. Each class
carries a stable machine-readable `code` and the HTTP `status_code` the API
layer renders it with, so route handlers never pick status codes themselves.

Two levels:
  Remote kinds    -- what a caller over HTTP is allowed to see (AuthRequired,
                     Forbidden, ValidationFailed, Conflict, NotFound, Locked,
                     InternalFailure, ...).
  Internal kinds  -- finer distinctions the credential store makes for its own
                     audit trail (UnknownEmail vs BadPassword, Expired vs
                     Revoked). They subclass the remote kind they are masked
                     as, so the mediator masks them simply by catching the
                     parent class.

Layer rule: no imports from api/, auth/, or clinic/.
"""

from __future__ import annotations


class PortalError(Exception):
    """Root of the taxonomy. Never raised directly."""

    code: str = "internal_error"
    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthRequired(PortalError):
    code = "auth_required"
    status_code = 401
    default_message = "Authentication required."


class BadCredentials(AuthRequired):
    """Login failed. UnknownEmail and BadPassword are both rendered as this."""

    code = "bad_credentials"
    default_message = "Invalid email or password."


class UnknownEmail(BadCredentials):
    pass


class BadPassword(BadCredentials):
    pass


class SessionInvalid(AuthRequired):
    """Token does not name a session."""


class SessionExpired(AuthRequired):
    pass


class SessionRevoked(AuthRequired):
    pass


class PrincipalInactive(AuthRequired):
    """Session is intact but its principal is no longer active."""


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class Forbidden(PortalError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have permission to perform this action."

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message, detail=reason)


class AccountInactive(PortalError):
    """Correct password, but the account is inactive, suspended, or deleted."""

    code = "account_inactive"
    status_code = 403
    default_message = "Account is not active. Please contact support."


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationFailed(PortalError):
    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."


class WeakPassword(ValidationFailed):
    code = "weak_password"
    default_message = "Password does not meet the password policy."


class BadEmail(ValidationFailed):
    code = "bad_email"
    default_message = "Please enter a valid email address."


class UnknownRole(ValidationFailed):
    code = "unknown_role"
    default_message = "Unknown role."


class UnknownOperation(ValidationFailed):
    code = "unknown_operation"
    default_message = "Unknown operation."


class RoleNotPermitted(ValidationFailed):
    code = "role_not_permitted"
    default_message = "That role cannot be assigned through this endpoint."


# ---------------------------------------------------------------------------
# Conflicts and lookups
# ---------------------------------------------------------------------------


class Conflict(PortalError):
    code = "conflict"
    status_code = 409
    default_message = "The request conflicts with the current state."


class EmailInUse(Conflict):
    code = "email_in_use"
    default_message = "An account with that email already exists."


class DuplicateTarget(Conflict):
    code = "duplicate_target"
    default_message = "Bulk request lists the same user more than once."


class NotFound(PortalError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------


class Locked(PortalError):
    code = "locked"
    status_code = 423
    default_message = "Too many failed login attempts. Try again later."


class LockedOut(Locked):
    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class RateLimited(PortalError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests."

    def __init__(self, retry_after: int, message: str | None = None, *, detail: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, detail=detail)


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class InternalFailure(PortalError):
    """Storage exhaustion or unexpected state. Detail never reaches the caller."""


class DeadlineExceeded(PortalError):
    code = "deadline_exceeded"
    status_code = 504
    default_message = "The request did not complete before its deadline."
