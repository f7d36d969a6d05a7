import json
from datetime import date
from pathlib import Path

import pytest

from models.tracking import RouteDirection
from services.fleet_service import FleetService

from conftest import ADMIN, DRIVER_D1, DRIVER_D2, FLEET_DATA, PARENT_P1, PARENT_P2


def test_route_snapshot_for_a_service_day(fleet):
    route = fleet.get_route("R1", date(2024, 5, 2))
    assert route.direction == RouteDirection.TO_SCHOOL
    assert [s.sequence for s in route.stops] == [1, 2]
    assert route.stops[0].expected_arrival.isoformat() == "2024-05-02T07:20:00+00:00"
    assert route.child_ids == ("C1", "C2")
    assert fleet.get_route("R404", date(2024, 5, 2)) is None


def test_schedule_times_use_the_service_timezone():
    fleet = FleetService(FLEET_DATA, timezone="America/New_York")
    stop = fleet.get_route("R1", date(2024, 5, 2)).stops[0]
    assert stop.expected_arrival.utcoffset().total_seconds() == -4 * 3600


def test_malformed_schedule_time_is_ignored():
    data = json.loads(json.dumps(FLEET_DATA))
    data["routes"]["R2"]["stops"][0]["arrival_time"] = "half past three"
    stop = FleetService(data).get_route("R2", date(2024, 5, 2)).stops[0]
    assert stop.expected_arrival is None


def test_bus_for_child(fleet):
    assert fleet.bus_for_child("C1") == "B1"
    assert fleet.bus_for_child("C3") == "B2"
    assert fleet.bus_for_child("C404") is None


def test_route_resolves_to_one_bus(fleet):
    assert fleet.bus_for_route("R1") == "B1"
    assert fleet.bus_for_route("R3") == "B1"
    assert fleet.bus_for_route("R2") == "B2"
    assert fleet.bus_for_route("R404") is None
    assert fleet.routes_of_bus("B1") == ["R1", "R3"]
    assert fleet.routes_of_bus("B2") == ["R2"]


def test_route_level_bus_wins_over_the_bus_default():
    data = json.loads(json.dumps(FLEET_DATA))
    data["routes"]["R2"]["bus_id"] = "B1"
    fleet = FleetService(data)
    assert fleet.routes_of_bus("B1") == ["R1", "R2", "R3"]
    assert fleet.routes_of_bus("B2") == []
    assert fleet.bus_for_child("C3") == "B1"


@pytest.mark.parametrize("principal,room,allowed", [
    (PARENT_P1, "child:C1", True),
    (PARENT_P1, "child:C2", False),
    (PARENT_P1, "bus:B1", True),
    (PARENT_P1, "bus:B2", True),
    (PARENT_P2, "bus:B2", False),
    (DRIVER_D1, "bus:B1", True),
    (DRIVER_D1, "bus:B2", False),
    (DRIVER_D2, "child:C3", False),
    (ADMIN, "child:C404", True),
    (ADMIN, "admins", True),
    (PARENT_P1, "admins", False),
])
def test_room_access(fleet, principal, room, allowed):
    assert fleet.can_view(principal, room) is allowed


def test_commands_only_for_assigned_driver_or_admin(fleet):
    assert fleet.can_command(DRIVER_D1, "B1")
    assert not fleet.can_command(DRIVER_D1, "B2")
    assert not fleet.can_command(PARENT_P1, "B1")
    assert fleet.can_command(ADMIN, "B2")


def test_from_file(tmp_path):
    path = tmp_path / "fleet.json"
    path.write_text(json.dumps(FLEET_DATA), encoding="utf-8")
    fleet = FleetService.from_file(str(path))
    assert [b["bus_id"] for b in fleet.fleet_overview()] == ["B1", "B2"]

    empty = FleetService.from_file(str(tmp_path / "missing.json"))
    assert empty.fleet_overview() == []

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    assert FleetService.from_file(str(broken)).buses == {}


def test_shipped_fleet_fixture_loads():
    fleet = FleetService.from_file(str(Path(__file__).resolve().parents[1] / "data" / "fleet.json"))
    route = fleet.get_route("R1", date(2024, 5, 2))
    assert route.stops[-1].is_school
    assert route.stops[-1].geofence_radius_m == 150
