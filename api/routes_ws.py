# api/routes_ws.py
"""
WebSocket gateway for live tracking.

Connect with `GET /ws?token=<jwt>`; a missing or invalid token closes the
handshake with policy-violation code 1008. Every frame in both directions is
JSON `{"event": ..., "data": ...}`.

Inbound:
  join:bus / join:child (data = id), join:admins, leave:bus / leave:child / leave:admins
  join:bus:B1 style (room key inside the event name) is accepted as well
  location:update   {busId, lat, lng, speed, heading, timestamp}
  emergency:report  {busId, detail}
  tracking:start    {busId, routeId}
  tracking:end      {busId}
  tracking:connection {busId, signalStrength, connectionType, batteryLevel, deviceInfo}

Outbound: the dispatcher's events, `ack` replies for the sender, and `error`
frames. Errors never close the socket.
"""
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from core.auth import InvalidTokenError, extract_token, decode_token
from core.container import TrackingContainer
from core.errors import StaleUpdateError, TrackingError, ValidationError
from core.exception_handlers import summarize_validation_errors
from core.response import error_frame, frame
from models.schemas import (
    ConnectionInfoUpdate,
    EmergencyReport,
    LocationUpdate,
    SocketFrame,
    TrackingEnd,
    TrackingStart,
)
from services.connection_registry import ADMINS_ROOM, Connection

logger = logging.getLogger(__name__)

router = APIRouter()

COMMANDS = {
    "location:update": (LocationUpdate, "update_location"),
    "emergency:report": (EmergencyReport, "report_emergency"),
    "tracking:start": (TrackingStart, "start_tracking"),
    "tracking:end": (TrackingEnd, "end_tracking"),
    "tracking:connection": (ConnectionInfoUpdate, "update_connection_info"),
}


def room_from_frame(event: str, data) -> Optional[str]:
    """Room key named by a join/leave frame, or None if the frame is not one."""
    action, _, rest = event.partition(":")
    if action not in ("join", "leave"):
        return None
    if rest == ADMINS_ROOM:
        return ADMINS_ROOM
    if rest in ("bus", "child"):
        ident = data.get("id") if isinstance(data, dict) else data
        if not isinstance(ident, (str, int)) or str(ident).strip() == "":
            raise ValidationError(f"{event} needs an id")
        return f"{rest}:{ident}"
    if rest:
        return rest
    if isinstance(data, str):
        return data
    raise ValidationError(f"{event} needs a room")


async def handle_frame(container: TrackingContainer, connection: Connection, raw) -> None:
    event = raw.get("event") if isinstance(raw, dict) else None
    try:
        msg = SocketFrame.model_validate(raw)
        event = msg.event

        room = room_from_frame(msg.event, msg.data)
        if room is not None:
            if msg.event.startswith("join"):
                container.registry.subscribe(connection, room)
            else:
                container.registry.unsubscribe(connection, room)
            connection.deliver(frame("ack", {"request": msg.event, "room": room}))
            return

        command = COMMANDS.get(msg.event)
        if command is None:
            raise ValidationError(f"Unknown event {msg.event!r}")
        model, method = command
        payload = model.model_validate(msg.data if isinstance(msg.data, dict) else {})
        result = await getattr(container.tracking, method)(connection.principal, payload)
        reply = {"request": msg.event, "bus_id": payload.bus_id}
        if msg.event != "location:update":
            reply["result"] = result.model_dump(mode="json")
        else:
            reply["status"] = result.status.value
        connection.deliver(frame("ack", reply))
    except StaleUpdateError:
        # Out-of-order fixes are dropped without telling anyone
        return
    except PydanticValidationError as e:
        connection.deliver(error_frame(ValidationError.code, summarize_validation_errors(e.errors()), event))
    except TrackingError as e:
        connection.deliver(error_frame(e.code, e.message, event))
    except Exception:
        logger.exception("Unhandled error for %r handling %s", connection, event)
        connection.deliver(error_frame("internal_error", "Internal server error", event))


@router.websocket("/ws")
async def tracking_socket(websocket: WebSocket, token: Optional[str] = None):
    container: TrackingContainer = websocket.app.state.container

    raw_token = token or extract_token(websocket.headers.get("authorization", ""))
    principal = None
    if raw_token:
        try:
            principal = decode_token(raw_token)
        except InvalidTokenError as e:
            logger.warning("WebSocket handshake rejected: %s", e)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = Connection(principal, websocket.send_json, queue_size=container.policy.outbound_queue_size)
    container.registry.register(connection)
    connection.start()
    try:
        while True:
            try:
                raw = await websocket.receive_json()
            except (ValueError, KeyError):
                # undecodable text or a binary frame
                connection.deliver(error_frame(ValidationError.code, "Frames must be JSON objects"))
                continue
            await handle_frame(container, connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        container.registry.connection_closed(connection)
        await connection.close()
