"""
Amora — Application exceptions and error codes.

Every error the engine raises on purpose derives from ``AppException`` so the
HTTP layer can render a uniform ``{error_code, message, details}`` envelope.
Errors coming from the document store or the network are *not* wrapped; they
propagate unchanged to the caller.
"""

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Standardized error codes."""

    # 400
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # 401 / 403
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"
    FORBIDDEN = "FORBIDDEN"

    # 404
    NOT_FOUND = "NOT_FOUND"
    NO_INCOMING_OFFER = "NO_INCOMING_OFFER"

    # 409
    CONFLICT = "CONFLICT"
    USERNAME_TAKEN = "USERNAME_TAKEN"
    CALL_BUSY = "CALL_BUSY"

    # 5xx
    CALL_FAILED = "CALL_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Any | None = None,
    ) -> None:
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class InvalidInputError(AppException):
    """Rejected locally before any store call."""

    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=message,
            status_code=400,
            details=details,
        )


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(
        self,
        message: str = "Authentication required",
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
    ) -> None:
        super().__init__(
            error_code=error_code,
            message=message,
            status_code=401,
        )


class ForbiddenError(AppException):
    """Authenticated, but not allowed to touch the resource."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            error_code=ErrorCode.FORBIDDEN,
            message=message,
            status_code=403,
        )


class NotFoundError(AppException):
    """A document the operation depends on does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(
            error_code=ErrorCode.NOT_FOUND,
            message=f"{kind} not found: {identifier}",
            status_code=404,
            details={"kind": kind, "id": identifier},
        )


class NoIncomingOfferError(AppException):
    """``answer_call`` found no pending offer on the thread."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(
            error_code=ErrorCode.NO_INCOMING_OFFER,
            message="No incoming offer",
            status_code=404,
            details={"thread_id": thread_id},
        )


class UsernameTakenError(AppException):
    def __init__(self, username: str) -> None:
        super().__init__(
            error_code=ErrorCode.USERNAME_TAKEN,
            message=f"Username already taken: {username}",
            status_code=409,
            details={"username": username},
        )


class CallBusyError(AppException):
    """Another call attempt is still live on the same thread."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(
            error_code=ErrorCode.CALL_BUSY,
            message="A call is already in progress on this conversation",
            status_code=409,
            details={"thread_id": thread_id},
        )


class CallFailedError(AppException):
    """Fatal media or signaling failure; the engine has already cleaned up."""

    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__(
            error_code=ErrorCode.CALL_FAILED,
            message=message,
            status_code=502,
            details=details,
        )
