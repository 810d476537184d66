"""Error taxonomy for hub operations.

Every error here is recoverable: it is reported to the session that caused it
as an ``error`` event and never closes the connection.
"""


class HubError(Exception):
    code = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_message(self) -> dict:
        return {"type": "error", "code": self.code, "message": self.message}


class ValidationError(HubError):
    """A required field is missing or malformed."""
    code = "validation"


class NotFoundError(HubError):
    """Unknown room, client or target."""
    code = "not_found"


class ConflictError(HubError):
    """Room id already taken."""
    code = "conflict"


class PermissionDeniedError(HubError):
    """A non-host attempted a host-only action."""
    code = "permission"


class StateError(HubError):
    """Action is not valid in the current state."""
    code = "state"
