# services/connection_registry.py
"""
Live connection registry.

Keeps room -> connections and connection -> rooms so that both broadcasting
to a room and cleaning up a closed connection cost O(subscribers). State is
process memory only; a reconnecting client re-subscribes.

Room keys:
  bus:<busId>      live position and events of one bus
  child:<childId>  pickup/dropoff and alerts concerning one child
  admins           emergency and disconnect alerts for every bus
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, FrozenSet, Optional, Set

from core.errors import AuthorizationError, ValidationError
from models.tracking import Principal

logger = logging.getLogger(__name__)

ADMINS_ROOM = "admins"
ROOM_KINDS = ("bus", "child")

SendFn = Callable[[dict], Awaitable[None]]


def bus_room(bus_id: str) -> str:
    return f"bus:{bus_id}"


def child_room(child_id: str) -> str:
    return f"child:{child_id}"


def parse_room(room_key: str):
    """Split a room key into (kind, id). Raises ValidationError for anything else."""
    if room_key == ADMINS_ROOM:
        return ADMINS_ROOM, None
    kind, sep, ident = (room_key or "").partition(":")
    if not sep or kind not in ROOM_KINDS or not ident.strip():
        raise ValidationError(f"Unknown room key: {room_key!r}")
    return kind, ident


class Connection:
    """
    One live client connection.

    Outbound messages go through a bounded queue drained by a single writer
    task, which keeps per-connection order and stops a slow socket from
    blocking whoever enqueued the message.
    """

    def __init__(self, principal: Principal, send: SendFn, queue_size: int = 100, connection_id: Optional[str] = None):
        self.connection_id = connection_id or uuid.uuid4().hex
        self.principal = principal
        self.rooms: Set[str] = set()
        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self.closed = False
        self.dropped = 0

    def __repr__(self):
        return f"<Connection {self.connection_id} {self.principal.role.value}:{self.principal.user_id}>"

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._pump(), name=f"conn-writer-{self.connection_id}")

    def deliver(self, message: dict) -> bool:
        """Queue a message without waiting. Returns False when it was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Outbound queue full for %r; dropped %s (total dropped=%d)",
                           self, message.get("event"), self.dropped)
            return False

    async def _pump(self):
        while True:
            message = await self._queue.get()
            try:
                await self._send(message)
            except Exception as e:
                # Peer went away mid-send; the read loop will report the disconnect
                logger.info("Send to %r failed (%s); stopping writer", self, e)
                self.closed = True
                return
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float = 1.0):
        """Wait until every queued message has been handed to the transport."""
        if self._writer is None or self._writer.done():
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out draining %r with %d queued", self, self._queue.qsize())

    async def close(self):
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None


Authorizer = Callable[[Principal, str], bool]
SubscribeHook = Callable[[Connection, str], None]


class ConnectionRegistry:
    def __init__(self, authorizer: Authorizer):
        self._authorizer = authorizer
        self._rooms: Dict[str, Set[Connection]] = {}
        self._connections: Dict[str, Connection] = {}
        self._on_subscribe: list = []

    def add_subscribe_listener(self, hook: SubscribeHook):
        """Called with (connection, room_key) after each new subscription."""
        self._on_subscribe.append(hook)

    def register(self, connection: Connection):
        self._connections[connection.connection_id] = connection
        logger.info("Connection opened: %r (%d live)", connection, len(self._connections))

    def subscribe(self, connection: Connection, room_key: str) -> bool:
        """
        Add `connection` to `room_key`. Returns False if it was already subscribed.
        Raises ValidationError for malformed keys and AuthorizationError when the
        principal may not watch that bus or child.
        """
        parse_room(room_key)
        if room_key in connection.rooms:
            return False
        if not self._authorizer(connection.principal, room_key):
            raise AuthorizationError(
                f"{connection.principal.role.value} {connection.principal.user_id} may not join {room_key}"
            )
        self._connections.setdefault(connection.connection_id, connection)
        self._rooms.setdefault(room_key, set()).add(connection)
        connection.rooms.add(room_key)
        logger.debug("%r joined %s", connection, room_key)

        for hook in self._on_subscribe:
            try:
                hook(connection, room_key)
            except Exception:
                logger.exception("on-subscribe hook failed for %r in %s", connection, room_key)
        return True

    def unsubscribe(self, connection: Connection, room_key: str) -> bool:
        members = self._rooms.get(room_key)
        removed = False
        if members is not None and connection in members:
            members.discard(connection)
            removed = True
            if not members:
                del self._rooms[room_key]
        connection.rooms.discard(room_key)
        return removed

    def connection_closed(self, connection: Connection):
        """Remove `connection` from every room it joined. Safe with no subscriptions."""
        for room_key in list(connection.rooms):
            self.unsubscribe(connection, room_key)
        self._connections.pop(connection.connection_id, None)
        logger.info("Connection closed: %r (%d live)", connection, len(self._connections))

    def subscribers_of(self, room_key: str) -> FrozenSet[Connection]:
        return frozenset(self._rooms.get(room_key, ()))

    def rooms(self) -> Dict[str, int]:
        return {room: len(members) for room, members in self._rooms.items()}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def shutdown(self):
        """Stop every writer task; called once at process teardown."""
        connections = list(self._connections.values())
        for connection in connections:
            self.connection_closed(connection)
            await connection.close()
