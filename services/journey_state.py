# services/journey_state.py
"""
Per-bus journey state for one service day.

Holds position, status, stop progress, delay and the day's event log. Status
changes only move forward through the regular journey; `emergency` and
`disconnected` are terminal shortcuts. All mutation happens under the owning
bus's lock in TrackingService, so nothing here is synchronized.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from config.settings import TrackingPolicy
from core.errors import InvalidTransitionError, StaleUpdateError, ValidationError
from models.tracking import (
    STATUS_ORDER,
    TERMINAL_STATUSES,
    BusStatus,
    ConnectionInfo,
    DomainEvent,
    GeoPosition,
    JourneySnapshot,
    NextStop,
    RouteSnapshot,
    Stop,
    StopProgress,
)
from tools.eta_calculator import (
    calculate_eta_seconds,
    effective_speed_kmph,
    haversine_meters,
    smooth_speed,
)

logger = logging.getLogger(__name__)


class _StopVisit:
    """Mutable progress of one route stop."""

    def __init__(self, stop: Stop):
        self.stop = stop
        self.actual_arrival: Optional[datetime] = None
        self.delay_minutes: Optional[float] = None
        self.child_ids: tuple = stop.child_ids

    @property
    def reached(self) -> bool:
        return self.actual_arrival is not None

    def progress(self) -> StopProgress:
        return StopProgress(
            stop_id=self.stop.stop_id,
            name=self.stop.name,
            sequence=self.stop.sequence,
            is_school=self.stop.is_school,
            child_ids=self.child_ids,
            expected_arrival=self.stop.expected_arrival,
            actual_arrival=self.actual_arrival,
            delay_minutes=self.delay_minutes,
        )


class BusJourneyState:
    def __init__(
        self,
        bus_id: str,
        route: RouteSnapshot,
        service_date: date,
        started_at: datetime,
        policy: TrackingPolicy,
        driver_id: Optional[str] = None,
    ):
        self.bus_id = bus_id
        self.route = route
        self.driver_id = driver_id
        self.service_date = service_date
        self.started_at = started_at
        self.policy = policy

        self.status = BusStatus.PREPARING
        self.position: Optional[GeoPosition] = None
        self.position_timestamp: Optional[datetime] = None
        self.speed_kmph = 0.0
        self.smoothed_speed_kmph: Optional[float] = None
        self.heading = 0.0
        self.cumulative_delay_minutes = 0.0
        self.connection_info = ConnectionInfo()
        self.events: List[DomainEvent] = []

        self._visits: List[_StopVisit] = [_StopVisit(s) for s in sorted(route.stops, key=lambda s: s.sequence)]
        self._next_distance_m: Optional[float] = None
        self._next_eta: Optional[datetime] = None

        # Geo-fence debounce for the next stop, owned by the classifier
        self.fence_hits = 0
        self.fence_entered_at: Optional[datetime] = None

        # Monotonic clock reading of the last accepted update; read by the idle watchdog
        self.last_activity: float = 0.0

    # ------------- STATUS -------------
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_live(self, today: date) -> bool:
        """Whether cold-start queries should report this journey as tracking."""
        if self.status in (BusStatus.COMPLETED, BusStatus.DISCONNECTED):
            return False
        return self.service_date == today

    def transition_to(self, new_status: BusStatus, timestamp: datetime) -> bool:
        """
        Move to `new_status`. Returns False when already there.

        Regressions raise InvalidTransitionError and leave the state unchanged.
        `emergency` is legal from any non-terminal status; `disconnected` from any status.
        """
        current = self.status
        if new_status == current:
            return False

        if new_status == BusStatus.DISCONNECTED:
            allowed = True
        elif current in TERMINAL_STATUSES:
            allowed = False
        elif new_status == BusStatus.EMERGENCY:
            allowed = True
        else:
            allowed = STATUS_ORDER[new_status] > STATUS_ORDER[current]

        if not allowed:
            raise InvalidTransitionError(
                f"bus {self.bus_id}: cannot move from {current.value} to {new_status.value}"
            )
        logger.info("Bus %s status %s -> %s at %s", self.bus_id, current.value, new_status.value, timestamp.isoformat())
        self.status = new_status
        return True

    # ------------- LOCATION -------------
    def apply_location_update(self, position: GeoPosition, speed: float, heading: float, timestamp: datetime):
        if self.position_timestamp is not None and timestamp <= self.position_timestamp:
            raise StaleUpdateError(
                f"bus {self.bus_id}: update at {timestamp.isoformat()} is not newer than "
                f"{self.position_timestamp.isoformat()}"
            )
        self.position = position
        self.position_timestamp = timestamp
        self.speed_kmph = speed
        self.heading = heading
        self.smoothed_speed_kmph = smooth_speed(self.smoothed_speed_kmph, speed, self.policy.speed_smoothing_factor)
        self._refresh_next_stop_estimate()

    def _refresh_next_stop_estimate(self):
        visit = self._next_visit()
        if visit is None or self.position is None:
            self._next_distance_m = None
            self._next_eta = None
            return
        distance = haversine_meters(self.position.lat, self.position.lng, visit.stop.lat, visit.stop.lng)
        speed = effective_speed_kmph(
            self.smoothed_speed_kmph, self.policy.min_moving_speed_kmph, self.policy.default_speed_kmph
        )
        self._next_distance_m = distance
        self._next_eta = self.position_timestamp + timedelta(seconds=calculate_eta_seconds(distance, speed))

    def distance_to(self, stop: Stop) -> Optional[float]:
        if self.position is None:
            return None
        return haversine_meters(self.position.lat, self.position.lng, stop.lat, stop.lng)

    # ------------- STOPS -------------
    def _next_visit(self) -> Optional[_StopVisit]:
        for visit in self._visits:
            if not visit.reached:
                return visit
        return None

    @property
    def next_stop(self) -> Optional[Stop]:
        visit = self._next_visit()
        return visit.stop if visit else None

    def record_stop_arrival(self, stop_id: str, child_ids: Iterable[str], timestamp: datetime) -> float:
        """
        Mark the next unvisited stop as reached and return its delay in minutes.

        Early arrivals give a negative delay; only positive delays add to the
        cumulative delay so an early stop cannot hide lateness elsewhere.
        """
        visit = self._next_visit()
        if visit is None or visit.stop.stop_id != stop_id:
            expected = visit.stop.stop_id if visit else None
            raise ValidationError(f"bus {self.bus_id}: stop {stop_id} is not the next stop (expected {expected})")

        visit.actual_arrival = timestamp
        visit.child_ids = tuple(child_ids)
        if visit.stop.expected_arrival is not None:
            delay = (timestamp - visit.stop.expected_arrival).total_seconds() / 60.0
        else:
            delay = 0.0
        visit.delay_minutes = round(delay, 2)
        if delay > 0:
            self.cumulative_delay_minutes = round(self.cumulative_delay_minutes + delay, 2)

        self.fence_hits = 0
        self.fence_entered_at = None
        self._refresh_next_stop_estimate()
        return visit.delay_minutes

    # ------------- MISC -------------
    def update_connection_info(self, **changes):
        data = self.connection_info.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        self.connection_info = ConnectionInfo(**data)

    def append_event(self, event: DomainEvent):
        self.events.append(event)

    def snapshot(self) -> JourneySnapshot:
        visit = self._next_visit()
        next_stop = None
        if visit is not None:
            next_stop = NextStop(
                stop_id=visit.stop.stop_id,
                name=visit.stop.name,
                distance_m=round(self._next_distance_m, 1) if self._next_distance_m is not None else None,
                eta=self._next_eta,
                expected_arrival=visit.stop.expected_arrival,
            )
        return JourneySnapshot(
            bus_id=self.bus_id,
            route_id=self.route.route_id,
            driver_id=self.driver_id,
            service_date=self.service_date,
            status=self.status,
            position=self.position,
            position_timestamp=self.position_timestamp,
            speed_kmph=self.speed_kmph,
            heading=self.heading,
            next_stop=next_stop,
            stops=tuple(v.progress() for v in self._visits),
            cumulative_delay_minutes=self.cumulative_delay_minutes,
            connection_info=self.connection_info.model_copy(),
            started_at=self.started_at,
            event_count=len(self.events),
        )

    def history(self) -> List[Dict]:
        return [e.model_dump(mode="json") for e in self.events]
