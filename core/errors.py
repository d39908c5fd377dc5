"""
core/errors.py -- Stable error taxonomy shared by every layer.

Each AppError subclass carries an HTTP status_code and a stable error_code the
client can branch on. The single exception handler in api/main.py renders any
AppError as the standard envelope:

    {"success": false, "message": "...", "errorCode": "FORBIDDEN"}

Messages are human-readable and never carry internal detail (no stack traces,
no raw database errors). Services raise these; routes never build error
responses by hand.

Layer rule: core/ is the kernel -- no imports from other packages.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for errors that map to a client-visible error code."""

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Request failed."

    def __init__(self, message: str | None = None, *, details: dict | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class Unauthorized(AppError):
    """Missing, invalid or expired token, or an inactive identity."""

    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication required."


class Forbidden(AppError):
    """Authenticated, but the effective role does not allow the action."""

    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "You do not have permission to perform this action."


class ValidationFailed(AppError):
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_message = "Validation failed."


class Conflict(AppError):
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Resource already exists."


class NotFound(AppError):
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found."


class RateLimited(AppError):
    """Two-factor attempt ceiling reached; the challenge has been reset."""

    status_code = 429
    error_code = "TOO_MANY_ATTEMPTS"
    default_message = "Too many failed attempts. Please request a new code."


class CodeExpired(AppError):
    status_code = 400
    error_code = "CODE_EXPIRED"
    default_message = "Verification code has expired. Please request a new code."


class NoChallenge(CodeExpired):
    """Verify or resend with no pending challenge on the identity.

    Shares CODE_EXPIRED with the expiry path: in both cases the client's only
    move is to request a new code.
    """

    default_message = "No active verification code. Please request a new code."


class InvalidCode(AppError):
    status_code = 400
    error_code = "INVALID_CODE"
    default_message = "Invalid verification code."


class DependencyUnavailable(AppError):
    """An external collaborator (mail dispatcher, cache) could not be reached."""

    status_code = 503
    error_code = "DEPENDENCY_UNAVAILABLE"
    default_message = "A required service is temporarily unavailable. Please retry."


class ConcurrentUpdate(AppError):
    """Optimistic concurrency check failed: the record changed under us.

    Raised by the store when a version-checked write matches no row. Services
    retry the read-modify-write cycle; it only reaches the client when the
    retry budget is exhausted.
    """

    status_code = 409
    error_code = "CONFLICT"
    default_message = "The record was modified concurrently. Please retry."
