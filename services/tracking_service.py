# services/tracking_service.py
"""
Live tracking orchestration.

Owns the active journeys and runs every command for a bus under that bus's
asyncio.Lock, so location update -> classification -> dispatch never races
for the same bus while different buses proceed independently. Each active
journey also has an idle watchdog task that forces `disconnected` when the
driver goes quiet for longer than the idle timeout.

Push (dispatcher) and poll (get_bus_tracking) both read the same journey
objects, so a cold-start query always agrees with the latest pushed event.
"""
import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from config.settings import TrackingPolicy
from core.errors import (
    AuthorizationError,
    StaleUpdateError,
    TrackingConflictError,
    TrackingError,
    UnknownBusError,
    ValidationError,
)
from models.schemas import (
    ConnectionInfoUpdate,
    EmergencyReport,
    LocationUpdate,
    TrackingEnd,
    TrackingStart,
)
from models.tracking import (
    ConnectionInfo,
    DomainEvent,
    GeoPosition,
    JourneySnapshot,
    Principal,
    TrackingLookup,
)
from services.connection_registry import ADMINS_ROOM, Connection, ConnectionRegistry, parse_room
from services.dispatcher import FanOutDispatcher
from services.event_classifier import EventClassifier
from services.fleet_service import FleetService
from services.journey_state import BusJourneyState

logger = logging.getLogger(__name__)

NOT_TRACKING_MESSAGE = "No active tracking for this bus at the moment"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackingService:
    def __init__(
        self,
        fleet: FleetService,
        registry: ConnectionRegistry,
        dispatcher: FanOutDispatcher,
        classifier: EventClassifier,
        policy: TrackingPolicy,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.fleet = fleet
        self.registry = registry
        self.dispatcher = dispatcher
        self.classifier = classifier
        self.policy = policy
        self._clock = clock
        self._monotonic = monotonic

        self._journeys: Dict[str, BusJourneyState] = {}
        # Ended or evicted journeys per bus, oldest first; read by the history endpoint only
        self._finished: Dict[str, List[BusJourneyState]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._watchdogs: Dict[str, asyncio.Task] = {}

        registry.add_subscribe_listener(self._on_subscribe)

    # ------------- helpers -------------
    def _lock(self, bus_id: str) -> asyncio.Lock:
        lock = self._locks.get(bus_id)
        if lock is None:
            lock = self._locks[bus_id] = asyncio.Lock()
        return lock

    def _today(self) -> date:
        return self._clock().astimezone(self.fleet.tz).date()

    def _check_command(self, principal: Principal, bus_id: str):
        if not self.fleet.can_command(principal, bus_id):
            raise AuthorizationError(f"{principal.role.value} {principal.user_id} may not control bus {bus_id}")

    def _require_live(self, bus_id: str) -> BusJourneyState:
        journey = self._journeys.get(bus_id)
        if journey is None or not journey.is_live(self._today()):
            raise UnknownBusError(f"Bus {bus_id} is not currently tracking")
        return journey

    def _publish(self, journey: BusJourneyState, events: List[DomainEvent], location: bool = False) -> JourneySnapshot:
        snapshot = journey.snapshot()
        if location:
            self.dispatcher.publish_location(snapshot)
        if events:
            self.dispatcher.publish_events(events, snapshot, journey.route.child_ids)
        return snapshot

    def _prune_history(self, bus_id: str):
        cutoff = self._today() - timedelta(days=self.policy.history_retention_days)
        kept = [j for j in self._finished.get(bus_id, ()) if j.service_date > cutoff]
        if kept:
            self._finished[bus_id] = kept
        else:
            self._finished.pop(bus_id, None)

    def _retire(self, bus_id: str, journey: BusJourneyState):
        if self._journeys.get(bus_id) is journey:
            del self._journeys[bus_id]
        self._finished.setdefault(bus_id, []).append(journey)
        self._prune_history(bus_id)
        task = self._watchdogs.pop(bus_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ------------- driver commands -------------
    async def start_tracking(self, principal: Principal, cmd: TrackingStart) -> JourneySnapshot:
        self._check_command(principal, cmd.bus_id)
        bus = self.fleet.get_bus(cmd.bus_id)
        if bus is None:
            raise ValidationError(f"Unknown bus {cmd.bus_id}")
        today = self._today()
        route = self.fleet.get_route(cmd.route_id, today)
        if route is None:
            raise ValidationError(f"Unknown route {cmd.route_id}")
        if cmd.route_id not in self.fleet.routes_of_bus(cmd.bus_id):
            raise ValidationError(f"Route {cmd.route_id} is not assigned to bus {cmd.bus_id}")

        async with self._lock(cmd.bus_id):
            existing = self._journeys.get(cmd.bus_id)
            if existing is not None:
                if existing.is_live(today):
                    raise TrackingConflictError(f"Bus {cmd.bus_id} is already tracking today")
                self._retire(cmd.bus_id, existing)

            now = cmd.timestamp or self._clock()
            journey = BusJourneyState(
                bus_id=cmd.bus_id,
                route=route,
                service_date=today,
                started_at=now,
                policy=self.policy,
                driver_id=bus.get("driver_id") or principal.user_id,
            )
            journey.last_activity = self._monotonic()
            events = self.classifier.start(journey, now)
            if cmd.lat is not None and cmd.lng is not None:
                events += self.classifier.classify_location(journey, GeoPosition(lat=cmd.lat, lng=cmd.lng), 0.0, 0.0, now)
            self._journeys[cmd.bus_id] = journey
            self._watchdogs[cmd.bus_id] = asyncio.create_task(
                self._watch_idle(cmd.bus_id, journey), name=f"idle-watchdog-{cmd.bus_id}"
            )
            logger.info("Tracking started: bus=%s route=%s by %s", cmd.bus_id, route.route_id, principal.user_id)
            return self._publish(journey, events, location=journey.position is not None)

    async def update_location(self, principal: Principal, cmd: LocationUpdate) -> JourneySnapshot:
        self._check_command(principal, cmd.bus_id)
        async with self._lock(cmd.bus_id):
            journey = self._require_live(cmd.bus_id)
            timestamp = cmd.timestamp or self._clock()
            try:
                events = self.classifier.classify_location(
                    journey, GeoPosition(lat=cmd.lat, lng=cmd.lng), cmd.speed, cmd.heading, timestamp
                )
            except StaleUpdateError as e:
                logger.info("Dropped stale update: %s", e.message)
                raise
            except TrackingError:
                raise
            except Exception:
                logger.exception("Classification failed for bus %s; update skipped", cmd.bus_id)
                raise
            journey.last_activity = self._monotonic()
            return self._publish(journey, events, location=True)

    async def report_emergency(self, principal: Principal, cmd: EmergencyReport) -> JourneySnapshot:
        self._check_command(principal, cmd.bus_id)
        async with self._lock(cmd.bus_id):
            journey = self._require_live(cmd.bus_id)
            timestamp = cmd.timestamp or self._clock()
            position = GeoPosition(lat=cmd.lat, lng=cmd.lng) if cmd.lat is not None and cmd.lng is not None else None
            events = self.classifier.emergency(journey, cmd.detail, timestamp, position)
            logger.warning("EMERGENCY on bus %s reported by %s: %s", cmd.bus_id, principal.user_id, cmd.detail)
            return self._publish(journey, events, location=position is not None)

    async def end_tracking(self, principal: Principal, cmd: TrackingEnd) -> JourneySnapshot:
        self._check_command(principal, cmd.bus_id)
        async with self._lock(cmd.bus_id):
            journey = self._journeys.get(cmd.bus_id)
            if journey is None:
                raise UnknownBusError(f"Bus {cmd.bus_id} is not currently tracking")
            events = self.classifier.end(journey, cmd.timestamp or self._clock())
            snapshot = self._publish(journey, events)
            self._retire(cmd.bus_id, journey)
            logger.info("Tracking ended: bus=%s status=%s", cmd.bus_id, journey.status.value)
            return snapshot

    async def update_connection_info(self, principal: Principal, cmd: ConnectionInfoUpdate) -> ConnectionInfo:
        self._check_command(principal, cmd.bus_id)
        async with self._lock(cmd.bus_id):
            journey = self._require_live(cmd.bus_id)
            journey.update_connection_info(
                signal_strength=cmd.signal_strength,
                connection_type=cmd.connection_type,
                battery_level=cmd.battery_level,
                device_info=cmd.device_info,
            )
            return journey.connection_info

    # ------------- idle timeout -------------
    async def _watch_idle(self, bus_id: str, journey: BusJourneyState):
        timeout = self.policy.idle_timeout_sec
        try:
            while True:
                idle = self._monotonic() - journey.last_activity
                if idle < timeout:
                    await asyncio.sleep(timeout - idle)
                    continue
                async with self._lock(bus_id):
                    if self._journeys.get(bus_id) is not journey:
                        return
                    idle = self._monotonic() - journey.last_activity
                    if idle < timeout:
                        continue
                    events = self.classifier.disconnect(journey, idle, self._clock())
                    self._publish(journey, events)
                    self._retire(bus_id, journey)
                    logger.warning("Bus %s disconnected after %.0fs without updates", bus_id, idle)
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Idle watchdog for bus %s crashed", bus_id)
        finally:
            if self._watchdogs.get(bus_id) is asyncio.current_task():
                del self._watchdogs[bus_id]

    # ------------- queries -------------
    def get_bus_tracking(self, bus_id: str, principal: Optional[Principal] = None) -> TrackingLookup:
        if principal is not None and not self.fleet.can_view_bus(principal, bus_id):
            raise AuthorizationError(f"{principal.role.value} {principal.user_id} may not view bus {bus_id}")
        journey = self._journeys.get(bus_id)
        if journey is None or not journey.is_live(self._today()):
            return TrackingLookup(active=False, bus_id=bus_id, message=NOT_TRACKING_MESSAGE)
        return TrackingLookup(active=True, bus_id=bus_id, snapshot=journey.snapshot())

    def get_child_bus_tracking(self, child_id: str, principal: Optional[Principal] = None) -> TrackingLookup:
        if principal is not None and not self.fleet.can_view_child(principal, child_id):
            raise AuthorizationError("Child not found or not authorized")
        if self.fleet.get_child(child_id) is None:
            raise ValidationError(f"Unknown child {child_id}")
        bus_id = self.fleet.bus_for_child(child_id)
        if bus_id is None:
            return TrackingLookup(active=False, child_id=child_id, message="No bus assigned to the child's route")
        lookup = self.get_bus_tracking(bus_id)
        return lookup.model_copy(update={"child_id": child_id})

    def get_bus_history(
        self,
        bus_id: str,
        principal: Optional[Principal] = None,
        service_date: Optional[date] = None,
    ) -> dict:
        """
        Every event the bus produced on one service day (today by default), across all of
        its journeys that day, ordered by journey start.
        """
        if principal is not None and not self.fleet.can_view_bus(principal, bus_id):
            raise AuthorizationError(f"{principal.role.value} {principal.user_id} may not view bus {bus_id}")
        day = service_date or self._today()
        journeys = [j for j in self._finished.get(bus_id, ()) if j.service_date == day]
        live = self._journeys.get(bus_id)
        if live is not None and live.service_date == day:
            journeys.append(live)
        journeys.sort(key=lambda j: j.started_at)

        sessions = []
        events: List[DomainEvent] = []
        for journey in journeys:
            sessions.append({
                "route_id": journey.route.route_id,
                "started_at": journey.started_at.isoformat(),
                "status": journey.status.value,
                "event_count": len(journey.events),
            })
            events.extend(journey.events)
        return {
            "bus_id": bus_id,
            "date": day.isoformat(),
            "count": len(events),
            "sessions": sessions,
            "events": [e.model_dump(mode="json") for e in events],
        }

    def active_snapshots(self) -> List[JourneySnapshot]:
        today = self._today()
        return [j.snapshot() for j in self._journeys.values() if j.is_live(today)]

    # ------------- subscriptions -------------
    def _on_subscribe(self, connection: Connection, room_key: str):
        """Push the current state so a late joiner is not blind until the next update."""
        kind, ident = parse_room(room_key)
        if kind == ADMINS_ROOM:
            for snapshot in self.active_snapshots():
                self.dispatcher.send_snapshot(connection, snapshot, snapshot.bus_id)
            return
        bus_id = ident if kind == "bus" else self.fleet.bus_for_child(ident)
        if bus_id is None:
            return
        self.dispatcher.send_snapshot(connection, self.get_bus_tracking(bus_id).snapshot, bus_id)

    # ------------- lifecycle -------------
    async def shutdown(self):
        tasks = list(self._watchdogs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchdogs.clear()
        logger.info("Tracking service stopped with %d active journey(s)", len(self._journeys))
