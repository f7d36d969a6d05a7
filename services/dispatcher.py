# services/dispatcher.py
"""
Fan-out of journey snapshots and domain events to room subscribers.

Delivery is best-effort and at most once per connection per message: each
target connection gets one non-blocking enqueue, even when it sits in more
than one target room. Nothing here awaits the network, so a stuck
subscriber never delays the next location update.
"""
import logging
from typing import Dict, Iterable, List, Optional

from core.response import frame
from models.tracking import DomainEvent, EventType, JourneySnapshot
from services.connection_registry import (
    ADMINS_ROOM,
    Connection,
    ConnectionRegistry,
    bus_room,
    child_room,
)

logger = logging.getLogger(__name__)

# Outbound event names per domain event type
EVENT_NAMES: Dict[EventType, str] = {
    EventType.ARRIVAL_AT_STOP: "stop:arrival",
    EventType.PICKUP: "child:pickup",
    EventType.DROPOFF: "child:dropoff",
    EventType.DELAY: "bus:delay",
    EventType.EMERGENCY: "bus:emergency",
    EventType.DISCONNECTED: "bus:disconnected",
    EventType.TRACKING_STARTED: "bus:tracking_started",
    EventType.TRACKING_ENDED: "bus:tracking_ended",
}

LOCATION_UPDATE = "bus:location_update"
SNAPSHOT = "bus:snapshot"

# Alerts that also go to every child on the route and to the admins room
ALERT_TYPES = frozenset({EventType.EMERGENCY, EventType.DISCONNECTED})


class FanOutDispatcher:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self.delivered = 0
        self.dropped = 0

    def _targets(self, rooms: Iterable[str]) -> List[Connection]:
        seen = set()
        targets = []
        for room in rooms:
            for connection in self.registry.subscribers_of(room):
                if connection.connection_id not in seen:
                    seen.add(connection.connection_id)
                    targets.append(connection)
        return targets

    def _fan_out(self, rooms: List[str], message: dict) -> int:
        sent = 0
        for connection in self._targets(rooms):
            if connection.deliver(message):
                sent += 1
            else:
                self.dropped += 1
        self.delivered += sent
        logger.debug("%s -> %d connection(s) in %s", message["event"], sent, rooms)
        return sent

    def publish_location(self, snapshot: JourneySnapshot) -> int:
        data = snapshot.model_dump(mode="json")
        return self._fan_out([bus_room(snapshot.bus_id)], frame(LOCATION_UPDATE, data))

    def publish_event(
        self,
        event: DomainEvent,
        snapshot: JourneySnapshot,
        route_child_ids: Optional[Iterable[str]] = None,
    ) -> int:
        rooms = [bus_room(event.bus_id)]
        if event.child_id:
            rooms.append(child_room(event.child_id))
        if event.type in ALERT_TYPES:
            rooms.extend(child_room(c) for c in (route_child_ids or ()))
            rooms.append(ADMINS_ROOM)
        data = event.model_dump(mode="json")
        data.update(snapshot.display_fields())
        return self._fan_out(rooms, frame(EVENT_NAMES[event.type], data))

    def publish_events(
        self,
        events: Iterable[DomainEvent],
        snapshot: JourneySnapshot,
        route_child_ids: Optional[Iterable[str]] = None,
    ) -> int:
        child_ids = tuple(route_child_ids or ())
        return sum(self.publish_event(e, snapshot, child_ids) for e in events)

    def send_snapshot(self, connection: Connection, snapshot: Optional[JourneySnapshot], bus_id: str) -> bool:
        """Catch-up message for a single late joiner."""
        if snapshot is None:
            data = {"bus_id": bus_id, "active": False}
        else:
            data = {"bus_id": bus_id, "active": True, **snapshot.model_dump(mode="json")}
        return connection.deliver(frame(SNAPSHOT, data))
