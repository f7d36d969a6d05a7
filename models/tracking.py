# models/tracking.py
"""
Domain types for live bus tracking: principals, route snapshots, journey
statuses, domain events and the read-only journey snapshot.
"""
from datetime import date, datetime
from enum import Enum
from typing import Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    PARENT = "parent"
    DRIVER = "driver"
    ADMIN = "admin"


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


class BusStatus(str, Enum):
    PREPARING = "preparing"
    EN_ROUTE_TO_SCHOOL = "en_route_to_school"
    AT_SCHOOL = "at_school"
    EN_ROUTE_TO_HOME = "en_route_to_home"
    COMPLETED = "completed"
    EMERGENCY = "emergency"
    DISCONNECTED = "disconnected"


# Forward-only ordering of the regular journey; emergency/disconnected sit outside it.
STATUS_ORDER = {
    BusStatus.PREPARING: 0,
    BusStatus.EN_ROUTE_TO_SCHOOL: 1,
    BusStatus.AT_SCHOOL: 2,
    BusStatus.EN_ROUTE_TO_HOME: 3,
    BusStatus.COMPLETED: 4,
}

TERMINAL_STATUSES = frozenset({BusStatus.COMPLETED, BusStatus.EMERGENCY, BusStatus.DISCONNECTED})


class RouteDirection(str, Enum):
    TO_SCHOOL = "to_school"
    TO_HOME = "to_home"


class GeoPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class Stop(BaseModel):
    """A stop on today's route, as handed over by the fleet directory."""
    model_config = ConfigDict(frozen=True)

    stop_id: str
    name: str = ""
    lat: float
    lng: float
    sequence: int
    expected_arrival: Optional[datetime] = None
    geofence_radius_m: Optional[float] = None
    is_school: bool = False
    child_ids: Tuple[str, ...] = ()

    @property
    def position(self) -> GeoPosition:
        return GeoPosition(lat=self.lat, lng=self.lng)


class RouteSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    name: str = ""
    direction: RouteDirection = RouteDirection.TO_SCHOOL
    stops: Tuple[Stop, ...] = ()

    @property
    def child_ids(self) -> Tuple[str, ...]:
        seen = []
        for stop in self.stops:
            for child_id in stop.child_ids:
                if child_id not in seen:
                    seen.append(child_id)
        return tuple(seen)


class EventType(str, Enum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"
    ARRIVAL_AT_STOP = "arrival_at_stop"
    DELAY = "delay"
    EMERGENCY = "emergency"
    DISCONNECTED = "disconnected"
    TRACKING_STARTED = "tracking_started"
    TRACKING_ENDED = "tracking_ended"


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    type: EventType
    timestamp: datetime
    bus_id: str
    child_id: Optional[str] = None
    stop_id: Optional[str] = None
    delay_minutes: Optional[float] = None
    detail: str = ""
    # where the driver reported an emergency from
    coordinates: Optional[GeoPosition] = None


class StopProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    stop_id: str
    name: str
    sequence: int
    is_school: bool
    child_ids: Tuple[str, ...]
    expected_arrival: Optional[datetime] = None
    actual_arrival: Optional[datetime] = None
    delay_minutes: Optional[float] = None


class NextStop(BaseModel):
    model_config = ConfigDict(frozen=True)

    stop_id: str
    name: str
    distance_m: Optional[float] = None
    eta: Optional[datetime] = None
    expected_arrival: Optional[datetime] = None


class ConnectionInfo(BaseModel):
    """Driver device health, reported alongside location updates."""
    signal_strength: str = "strong"  # 'weak' | 'moderate' | 'strong'
    connection_type: str = "4G"
    battery_level: int = 100
    device_info: Optional[str] = None


class JourneySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    bus_id: str
    route_id: str
    driver_id: Optional[str] = None
    service_date: date
    status: BusStatus
    position: Optional[GeoPosition] = None
    position_timestamp: Optional[datetime] = None
    speed_kmph: float = 0.0
    heading: float = 0.0
    next_stop: Optional[NextStop] = None
    stops: Tuple[StopProgress, ...] = ()
    cumulative_delay_minutes: float = 0.0
    connection_info: ConnectionInfo = Field(default_factory=ConnectionInfo)
    started_at: datetime
    event_count: int = 0

    def display_fields(self) -> dict:
        """The subset pushed with every event so clients can redraw without a refetch."""
        return {
            "status": self.status.value,
            "position": self.position.model_dump() if self.position else None,
            "position_timestamp": self.position_timestamp.isoformat() if self.position_timestamp else None,
            "next_stop": self.next_stop.model_dump(mode="json") if self.next_stop else None,
            "eta": self.next_stop.eta.isoformat() if self.next_stop and self.next_stop.eta else None,
            "cumulative_delay_minutes": self.cumulative_delay_minutes,
        }


class TrackingLookup(BaseModel):
    """Result of a cold-start query: either a live snapshot or 'not currently tracking'."""
    active: bool
    bus_id: Optional[str] = None
    child_id: Optional[str] = None
    snapshot: Optional[JourneySnapshot] = None
    message: Optional[str] = None
