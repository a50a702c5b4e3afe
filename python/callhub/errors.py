"""
Error taxonomy for CallHub.

Every failure the core reports to an acting client is a CallhubError
carrying a protocol ErrorCode. Failures are never broadcast.
"""

from __future__ import annotations

from .protocol import ErrorCode


class CallhubError(Exception):
    """Base class for errors reported to the acting client."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message = "Internal error."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(CallhubError):
    """Malformed or out-of-sequence request."""

    code = ErrorCode.INVALID_REQUEST
    default_message = "Invalid request."


class AdminConflict(CallhubError):
    """Another live admin already holds the room."""

    code = ErrorCode.ADMIN_CONFLICT
    default_message = "Admin already present."


class Unauthorized(CallhubError):
    """Non-admin attempted an admin-only action."""

    code = ErrorCode.UNAUTHORIZED
    default_message = "Not permitted."


class NotInRoom(CallhubError):
    """The acting connection has no room membership."""

    code = ErrorCode.NOT_IN_ROOM
    default_message = "Must join a room first."


class Busy(CallhubError):
    """Conflicting screen share request."""

    code = ErrorCode.BUSY
    default_message = "Screen share already pending or active for this user."


class JoinTimeout(CallhubError):
    """The server did not answer a join request in time."""

    code = ErrorCode.TIMEOUT
    default_message = "Timed out waiting for join response."


_ERRORS_BY_CODE: dict[str, type[CallhubError]] = {
    cls.code.value: cls
    for cls in (InvalidRequest, AdminConflict, Unauthorized, NotInRoom, Busy, JoinTimeout)
}


def error_for_code(code: str | None, message: str | None = None) -> CallhubError:
    """Rebuild the exception matching a wire error code."""
    cls = _ERRORS_BY_CODE.get(code or "", CallhubError)
    return cls(message)


__all__ = [
    "CallhubError",
    "InvalidRequest",
    "AdminConflict",
    "Unauthorized",
    "NotInRoom",
    "Busy",
    "JoinTimeout",
    "error_for_code",
]
