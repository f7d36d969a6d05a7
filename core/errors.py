"""
Tracking error taxonomy.

Every error here is recoverable and local to the single update or command
that raised it. `status_code` and `code` drive the HTTP envelope built in
core.exception_handlers and the `error` frames sent over WebSocket.
"""


class TrackingError(Exception):
    status_code = 400
    code = "tracking_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class ValidationError(TrackingError):
    """Malformed inbound payload."""
    status_code = 400
    code = "validation_error"


class AuthorizationError(TrackingError):
    """Principal is not allowed to access this bus, child or room."""
    status_code = 403
    code = "forbidden"


class StaleUpdateError(TrackingError):
    """Location update is older than the stored position."""
    status_code = 409
    code = "stale_update"


class InvalidTransitionError(TrackingError):
    """Status change would regress the journey."""
    status_code = 409
    code = "invalid_transition"


class UnknownBusError(TrackingError):
    """Bus is not currently tracking."""
    status_code = 404
    code = "not_tracking"


class TrackingConflictError(TrackingError):
    """A live tracking session already exists for this bus today."""
    status_code = 409
    code = "already_tracking"
