"""Error taxonomy shared by the probe, detector and session modules."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK_FAILURE = "NETWORK_FAILURE"
    HTTP_ERROR = "HTTP_ERROR"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    SESSION_STATE_ERROR = "SESSION_STATE_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class SessionStateError(RuntimeError):
    """Raised when a session operation does not fit the current state."""

    kind = ErrorKind.SESSION_STATE_ERROR


class SessionAlreadyActive(SessionStateError):
    """Raised when starting a session while one is running."""


class NoActiveSession(SessionStateError):
    """Raised when ending a session while none is running."""


class SessionRequired(SessionStateError):
    """Raised when an operation needs an active session."""


__all__ = [
    "ErrorKind",
    "NoActiveSession",
    "SessionAlreadyActive",
    "SessionRequired",
    "SessionStateError",
]
