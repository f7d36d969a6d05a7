# api/routes_admin.py
from fastapi import APIRouter, Depends

from api.deps import get_container
from core.auth import require_roles
from core.container import TrackingContainer
from core.response import ok
from models.tracking import Principal, Role

router = APIRouter()


@router.get("/fleet/overview")
async def fleet_overview(
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    container: TrackingContainer = Depends(get_container),
):
    """
    Admin: every bus in the directory with its live journey, if any.

    Response JSON:
    {
      "ok": true,
      "data": {
        "buses": [{"bus_id": "B1", "route_id": "R1", "tracking": {...snapshot...} | null}, ...],
        "connections": 4,
        "rooms": {"bus:B1": 2, "child:C1": 1}
      }
    }
    """
    live = {s.bus_id: s for s in container.tracking.active_snapshots()}
    buses = []
    for bus in container.fleet.fleet_overview():
        snapshot = live.get(bus["bus_id"])
        buses.append({**bus, "tracking": snapshot.model_dump(mode="json") if snapshot else None})
    return ok({
        "buses": buses,
        "connections": container.registry.connection_count,
        "rooms": container.registry.rooms(),
    })
