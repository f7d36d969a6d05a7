def ok(data=None):
    """Standard success envelope."""
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred"):
    """Standard error envelope."""
    return {"ok": False, "data": None, "error": {"code": code, "message": message}}


def frame(event: str, data=None):
    """WebSocket message: {"event": "bus:location_update", "data": {...}}."""
    return {"event": event, "data": data}


def error_frame(code: str, message: str, request_event: str | None = None):
    """WebSocket reply to an inbound frame that could not be handled."""
    return frame("error", {"code": code, "message": message, "request": request_event})
