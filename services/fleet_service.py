# services/fleet_service.py
"""
Fleet directory: buses, routes, stops and children, plus the access rules
built on top of them.

Loaded once from a JSON fixture (settings.FLEET_DATA_PATH) shaped like:

    {
      "buses":    {"B1": {"bus_number": "12", "driver_id": "D1", "route_id": "R1"}},
      "routes":   {"R1": {"name": "North AM", "direction": "to_school",
                          "bus_id": "B1",  # optional; e.g. an afternoon route run by the same bus
                          "stops": [{"stop_id": "S1", "name": "Elm St", "lat": 40.71, "lng": -74.0,
                                     "sequence": 1, "arrival_time": "07:30"}, ...]}},
      "children": {"C1": {"name": "Ana", "parent_id": "P1", "route_id": "R1", "stop_id": "S1"}}
    }

The CRUD side of the product owns this data; tracking only reads it.
"""
import json
import logging
import os
from datetime import date, datetime, time
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from models.tracking import Principal, Role, RouteDirection, RouteSnapshot, Stop
from services.connection_registry import ADMINS_ROOM, parse_room

logger = logging.getLogger(__name__)


class FleetService:
    def __init__(self, data: Optional[dict] = None, timezone: str = "UTC"):
        data = data or {}
        self.buses: Dict[str, dict] = data.get("buses") or {}
        self.routes: Dict[str, dict] = data.get("routes") or {}
        self.children: Dict[str, dict] = data.get("children") or {}
        self.tz = ZoneInfo(timezone)

        if not isinstance(self.buses, dict):
            self.buses = {}
        if not isinstance(self.routes, dict):
            self.routes = {}
        if not isinstance(self.children, dict):
            self.children = {}

    @classmethod
    def from_file(cls, path: str, timezone: str = "UTC") -> "FleetService":
        data = {}
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Failed to load fleet data from %s: %s", path, e)
                data = {}
        else:
            logger.warning("Fleet data file %s not found; directory is empty", path)
        svc = cls(data, timezone=timezone)
        logger.info("Fleet directory loaded: %d buses, %d routes, %d children",
                    len(svc.buses), len(svc.routes), len(svc.children))
        return svc

    # ------------- BUS -------------
    def get_bus(self, bus_id: str) -> Optional[dict]:
        bus = self.buses.get(bus_id)
        return bus if isinstance(bus, dict) else None

    def routes_of_bus(self, bus_id: str) -> List[str]:
        """Routes this bus may run; every route resolves to exactly one bus through bus_for_route."""
        return [route_id for route_id in self.routes if self.bus_for_route(route_id) == bus_id]

    def bus_for_route(self, route_id: str) -> Optional[str]:
        """A route's own `bus_id` wins over a bus that lists it as `route_id`."""
        route = self.routes.get(route_id)
        if isinstance(route, dict) and route.get("bus_id") in self.buses:
            return route["bus_id"]
        for bus_id, bus in self.buses.items():
            if isinstance(bus, dict) and bus.get("route_id") == route_id:
                return bus_id
        return None

    def fleet_overview(self) -> List[dict]:
        overview = []
        for bus_id, bus in self.buses.items():
            if not isinstance(bus, dict):
                continue
            overview.append({
                "bus_id": bus_id,
                "bus_number": bus.get("bus_number"),
                "driver_id": bus.get("driver_id"),
                "route_id": bus.get("route_id"),
                "route_ids": self.routes_of_bus(bus_id),
            })
        return overview

    # ------------- ROUTE -------------
    def _stop_children(self, route_id: str) -> Dict[str, List[str]]:
        by_stop: Dict[str, List[str]] = {}
        for child_id, child in self.children.items():
            if child.get("route_id") == route_id and child.get("stop_id"):
                by_stop.setdefault(child["stop_id"], []).append(child_id)
        return by_stop

    def _expected_arrival(self, value: Optional[str], service_date: date) -> Optional[datetime]:
        if not value:
            return None
        try:
            hh, mm = value.split(":")[:2]
            return datetime.combine(service_date, time(int(hh), int(mm)), tzinfo=self.tz)
        except ValueError:
            logger.warning("Ignoring malformed stop arrival time %r", value)
            return None

    def get_route(self, route_id: str, service_date: date) -> Optional[RouteSnapshot]:
        """The route's ordered stops for one service day, with expected arrivals as datetimes."""
        route = self.routes.get(route_id)
        if not isinstance(route, dict):
            return None
        children_by_stop = self._stop_children(route_id)
        stops = []
        for idx, raw in enumerate(route.get("stops") or []):
            stops.append(Stop(
                stop_id=str(raw.get("stop_id") or f"{route_id}-{idx + 1}"),
                name=raw.get("name", ""),
                lat=float(raw["lat"]),
                lng=float(raw["lng"]),
                sequence=int(raw.get("sequence", idx + 1)),
                expected_arrival=self._expected_arrival(raw.get("arrival_time"), service_date),
                geofence_radius_m=raw.get("geofence_radius_m"),
                is_school=bool(raw.get("is_school", False)),
                child_ids=tuple(raw.get("child_ids") or children_by_stop.get(raw.get("stop_id"), [])),
            ))
        stops.sort(key=lambda s: s.sequence)
        return RouteSnapshot(
            route_id=route_id,
            name=route.get("name", ""),
            direction=RouteDirection(route.get("direction", RouteDirection.TO_SCHOOL.value)),
            stops=tuple(stops),
        )

    # ------------- CHILD -------------
    def get_child(self, child_id: str) -> Optional[dict]:
        child = self.children.get(child_id)
        return child if isinstance(child, dict) else None

    def bus_for_child(self, child_id: str) -> Optional[str]:
        child = self.get_child(child_id)
        if not child or not child.get("route_id"):
            return None
        return self.bus_for_route(child["route_id"])

    def children_of(self, parent_id: str) -> List[str]:
        return [cid for cid, c in self.children.items() if c.get("parent_id") == parent_id]

    # ------------- ACCESS -------------
    def is_assigned_driver(self, principal: Principal, bus_id: str) -> bool:
        bus = self.get_bus(bus_id)
        return bool(bus) and principal.role == Role.DRIVER and bus.get("driver_id") == principal.user_id

    def can_command(self, principal: Principal, bus_id: str) -> bool:
        """Driver commands: the bus's assigned driver, or any admin."""
        if principal.role == Role.ADMIN:
            return True
        return self.is_assigned_driver(principal, bus_id)

    def can_view_child(self, principal: Principal, child_id: str) -> bool:
        if principal.role == Role.ADMIN:
            return True
        child = self.get_child(child_id)
        if child is None:
            return False
        if principal.role == Role.PARENT:
            return child.get("parent_id") == principal.user_id
        return False

    def can_view_bus(self, principal: Principal, bus_id: str) -> bool:
        if principal.role == Role.ADMIN:
            return True
        if principal.role == Role.DRIVER:
            return self.is_assigned_driver(principal, bus_id)
        return any(self.bus_for_child(cid) == bus_id for cid in self.children_of(principal.user_id))

    def can_view(self, principal: Principal, room_key: str) -> bool:
        """Authorization lookup used by the connection registry."""
        kind, ident = parse_room(room_key)
        if kind == ADMINS_ROOM:
            return principal.role == Role.ADMIN
        if kind == "bus":
            return self.can_view_bus(principal, ident)
        return self.can_view_child(principal, ident)
