"""
Error taxonomy for the relay.

Every client-visible failure carries a short machine-checkable ``reason``
code. The websocket dispatcher turns these into named error events and the
REST routes map them onto HTTP status codes.
"""


class RelayError(Exception):
    """Base class for failures reported back to the originating client"""

    reason = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class NotFound(RelayError):
    """Unknown user or room"""

    reason = "not_found"
    status_code = 404


class Unauthorized(RelayError):
    """Connection not announced, or announced identity mismatches the sender"""

    reason = "unauthorized"
    status_code = 401


class Forbidden(RelayError):
    """Action between users who are not mutual contacts"""

    reason = "forbidden"
    status_code = 403


class InvalidArgument(RelayError):
    """Malformed, empty or oversized input"""

    reason = "invalid_argument"
    status_code = 400


class Unavailable(RelayError):
    """Call target has no active connection"""

    reason = "unavailable"
    status_code = 409


class Conflict(RelayError):
    """Duplicate unique field, e.g. a username collision on create"""

    reason = "conflict"
    status_code = 409


class StorageError(RelayError):
    """Store or infrastructure failure. Details are logged, never sent to clients."""

    reason = "internal"
    status_code = 500
