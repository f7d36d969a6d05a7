# services/event_classifier.py
"""
Turns raw location updates and driver commands into domain events.

Only the next unvisited stop is ever considered, so GPS noise near a later
stop on a looping route cannot produce an arrival out of order. An arrival
needs `arrival_debounce_samples` consecutive fixes inside the stop's
geo-fence; the arrival time is the first of those fixes.
"""
import logging
from datetime import datetime
from typing import List, Optional

from config.settings import TrackingPolicy
from core.errors import StaleUpdateError
from models.tracking import (
    BusStatus,
    DomainEvent,
    EventType,
    GeoPosition,
    RouteDirection,
)
from services.journey_state import BusJourneyState

logger = logging.getLogger(__name__)


class EventClassifier:
    def __init__(self, policy: TrackingPolicy):
        self.policy = policy

    def _emit(self, state: BusJourneyState, events: List[DomainEvent], **fields) -> DomainEvent:
        event = DomainEvent(bus_id=state.bus_id, **fields)
        state.append_event(event)
        events.append(event)
        return event

    # ------------- LIFECYCLE -------------
    def start(self, state: BusJourneyState, timestamp: datetime) -> List[DomainEvent]:
        """Leave `preparing` for the leg the route serves."""
        events: List[DomainEvent] = []
        if state.route.direction == RouteDirection.TO_SCHOOL:
            state.transition_to(BusStatus.EN_ROUTE_TO_SCHOOL, timestamp)
        else:
            state.transition_to(BusStatus.EN_ROUTE_TO_HOME, timestamp)
        self._emit(
            state, events,
            type=EventType.TRACKING_STARTED,
            timestamp=timestamp,
            detail=f"Route {state.route.name or state.route.route_id} started",
        )
        return events

    def end(self, state: BusJourneyState, timestamp: datetime) -> List[DomainEvent]:
        events: List[DomainEvent] = []
        if not state.is_terminal:
            state.transition_to(BusStatus.COMPLETED, timestamp)
        self._emit(state, events, type=EventType.TRACKING_ENDED, timestamp=timestamp, detail="Route completed")
        return events

    # ------------- LOCATION -------------
    def classify_location(
        self,
        state: BusJourneyState,
        position: GeoPosition,
        speed: float,
        heading: float,
        timestamp: datetime,
    ) -> List[DomainEvent]:
        """
        Apply one update to `state` and return the events it produced.

        Raises StaleUpdateError (from the state) without touching anything.
        """
        state.apply_location_update(position, speed, heading, timestamp)
        events: List[DomainEvent] = []
        if state.is_terminal or state.status == BusStatus.PREPARING:
            return events

        stop = state.next_stop
        if stop is None:
            return events

        radius = stop.geofence_radius_m or self.policy.geofence_radius_m
        distance = state.distance_to(stop)
        if distance is None or distance > radius:
            if state.fence_hits:
                logger.debug("Bus %s left fence of %s after %d fix(es)", state.bus_id, stop.stop_id, state.fence_hits)
            state.fence_hits = 0
            state.fence_entered_at = None
            return events

        if state.fence_hits == 0:
            state.fence_entered_at = timestamp
        state.fence_hits += 1
        if state.fence_hits < self.policy.arrival_debounce_samples:
            return events

        arrived_at = state.fence_entered_at or timestamp
        delay = state.record_stop_arrival(stop.stop_id, stop.child_ids, arrived_at)
        self._emit(
            state, events,
            type=EventType.ARRIVAL_AT_STOP,
            timestamp=arrived_at,
            stop_id=stop.stop_id,
            delay_minutes=delay,
            detail=f"Arrived at {stop.name or stop.stop_id}",
        )

        if delay > self.policy.delay_threshold_minutes:
            self._emit(
                state, events,
                type=EventType.DELAY,
                timestamp=arrived_at,
                stop_id=stop.stop_id,
                delay_minutes=delay,
                detail=f"{delay:.1f} min late at {stop.name or stop.stop_id}",
            )

        if state.status == BusStatus.EN_ROUTE_TO_SCHOOL:
            child_event = EventType.PICKUP
        elif state.status == BusStatus.EN_ROUTE_TO_HOME:
            child_event = EventType.DROPOFF
        else:
            child_event = None

        if child_event is not None:
            for child_id in stop.child_ids:
                self._emit(
                    state, events,
                    type=child_event,
                    timestamp=arrived_at,
                    child_id=child_id,
                    stop_id=stop.stop_id,
                    detail=f"{child_event.value} at {stop.name or stop.stop_id}",
                )

        if stop.is_school and state.status == BusStatus.EN_ROUTE_TO_SCHOOL:
            state.transition_to(BusStatus.AT_SCHOOL, arrived_at)

        return events

    # ------------- COMMANDS -------------
    def emergency(
        self,
        state: BusJourneyState,
        detail: str,
        timestamp: datetime,
        position: Optional[GeoPosition] = None,
    ) -> List[DomainEvent]:
        """
        Driver-reported emergency: emitted immediately, never debounced.
        A reported position also moves the bus, unless an equal or newer fix is already stored;
        the event carries it either way.
        """
        events: List[DomainEvent] = []
        if position is not None:
            try:
                state.apply_location_update(position, state.speed_kmph, state.heading, timestamp)
            except StaleUpdateError:
                logger.info("Emergency position for bus %s is older than the last fix; position kept", state.bus_id)
        state.transition_to(BusStatus.EMERGENCY, timestamp)
        self._emit(
            state, events,
            type=EventType.EMERGENCY,
            timestamp=timestamp,
            detail=f"EMERGENCY: {detail}",
            coordinates=position,
        )
        return events

    def disconnect(self, state: BusJourneyState, idle_seconds: float, timestamp: datetime) -> List[DomainEvent]:
        """Idle-timeout expiry; `disconnected` is reachable from every status."""
        events: List[DomainEvent] = []
        state.transition_to(BusStatus.DISCONNECTED, timestamp)
        self._emit(
            state, events,
            type=EventType.DISCONNECTED,
            timestamp=timestamp,
            detail=f"No location update for {idle_seconds:.0f}s",
        )
        return events
