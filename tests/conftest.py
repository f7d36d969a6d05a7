import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from config.settings import Settings, TrackingPolicy
from core.auth import create_access_token
from core.container import build_container
from main import create_app
from models.tracking import Principal, Role
from services.connection_registry import Connection
from services.fleet_service import FleetService


SERVICE_DAY = datetime(2024, 5, 2, tzinfo=timezone.utc)

# Stop coordinates; ~0.0003 deg of latitude is ~33 m, well inside a 100 m fence
S1 = (40.7128, -74.0060)
SCH = (40.7240, -73.9950)
FAR = (40.7000, -74.0200)

FLEET_DATA = {
    "buses": {
        "B1": {"bus_number": "12", "driver_id": "D1", "route_id": "R1"},
        "B2": {"bus_number": "7", "driver_id": "D2", "route_id": "R2"},
    },
    "routes": {
        "R1": {
            "name": "Northside Morning",
            "direction": "to_school",
            "stops": [
                {"stop_id": "S1", "name": "Elm St", "lat": S1[0], "lng": S1[1], "sequence": 1, "arrival_time": "07:20"},
                {"stop_id": "SCH", "name": "Lincoln Elementary", "lat": SCH[0], "lng": SCH[1], "sequence": 2,
                 "arrival_time": "07:45", "is_school": True},
            ],
        },
        "R2": {
            "name": "Northside Afternoon",
            "direction": "to_home",
            "stops": [
                {"stop_id": "S1", "name": "Elm St", "lat": S1[0], "lng": S1[1], "sequence": 1, "arrival_time": "15:30"},
            ],
        },
        # afternoon run of B1; no children ride it
        "R3": {
            "name": "Northside Late Run",
            "direction": "to_home",
            "bus_id": "B1",
            "stops": [
                {"stop_id": "S1", "name": "Elm St", "lat": S1[0], "lng": S1[1], "sequence": 1, "arrival_time": "15:30"},
            ],
        },
    },
    "children": {
        "C1": {"name": "Ana", "parent_id": "P1", "route_id": "R1", "stop_id": "S1"},
        "C2": {"name": "Ben", "parent_id": "P2", "route_id": "R1", "stop_id": "S1"},
        "C3": {"name": "Cai", "parent_id": "P1", "route_id": "R2", "stop_id": "S1"},
    },
}


def at(hour: int, minute: int, second: int = 0) -> datetime:
    """A timestamp on the test service day."""
    return SERVICE_DAY + timedelta(hours=hour, minutes=minute, seconds=second)


def fixed_clock():
    return at(7, 0)


class Recorder:
    """Stands in for a socket's send_json."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    @property
    def events(self):
        return [m["event"] for m in self.messages]

    def of(self, event):
        return [m["data"] for m in self.messages if m["event"] == event]


PARENT_P1 = Principal(user_id="P1", role=Role.PARENT)
PARENT_P2 = Principal(user_id="P2", role=Role.PARENT)
DRIVER_D1 = Principal(user_id="D1", role=Role.DRIVER)
DRIVER_D2 = Principal(user_id="D2", role=Role.DRIVER)
ADMIN = Principal(user_id="A1", role=Role.ADMIN)


@pytest.fixture()
def fleet():
    return FleetService(FLEET_DATA, timezone="UTC")


@pytest.fixture()
def policy():
    return TrackingPolicy(idle_timeout_sec=600, outbound_queue_size=50)


@pytest.fixture()
def container(fleet, policy):
    return build_container(Settings(), fleet=fleet, policy=policy, clock=fixed_clock)


@pytest_asyncio.fixture()
async def live_container(container):
    """Container whose watchdogs and writer tasks are cleaned up after the test."""
    yield container
    await container.shutdown()


@pytest_asyncio.fixture()
async def connect(live_container):
    """Factory: open a started, registered connection for a principal."""
    opened = []

    def _connect(principal: Principal):
        recorder = Recorder()
        conn = Connection(principal, recorder, queue_size=live_container.policy.outbound_queue_size)
        conn.recorder = recorder
        live_container.registry.register(conn)
        conn.start()
        opened.append(conn)
        return conn

    yield _connect
    for conn in opened:
        await conn.close()


def auth_headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest_asyncio.fixture()
async def api_client(live_container):
    """Async test client over the ASGI app; the container is injected, lifespan is not run."""
    app = create_app(live_container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
