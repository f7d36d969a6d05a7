# api/routes_tracking.py
"""
REST surface of live tracking: driver commands and cold-start queries.

Every response uses the standard envelope from core.response; tracking
errors are rendered by core.exception_handlers.
"""
import logging
from datetime import date

from fastapi import APIRouter, Depends

from core.auth import get_current_principal, require_roles
from core.response import ok
from models.schemas import (
    ConnectionInfoUpdate,
    EmergencyReport,
    LocationUpdate,
    TrackingEnd,
    TrackingStart,
)
from models.tracking import Principal, Role
from services.tracking_service import TrackingService
from api.deps import get_tracking

logger = logging.getLogger(__name__)

router = APIRouter()

driver_or_admin = require_roles(Role.DRIVER, Role.ADMIN)


@router.post("/start", status_code=201)
async def start_tracking(
    payload: TrackingStart,
    principal: Principal = Depends(driver_or_admin),
    tracking: TrackingService = Depends(get_tracking),
):
    """
    Driver starts today's journey for a bus.

    Request JSON:
    {"busId": "B1", "routeId": "R1", "lat": 40.71, "lng": -74.0}

    - 201 Created with the journey snapshot
    - 409 already_tracking if a live journey exists for the bus today
    """
    snapshot = await tracking.start_tracking(principal, payload)
    return ok(snapshot.model_dump(mode="json"))


@router.post("/update")
async def update_location(
    payload: LocationUpdate,
    principal: Principal = Depends(driver_or_admin),
    tracking: TrackingService = Depends(get_tracking),
):
    """
    Driver GPS fix.

    Request JSON:
    {"busId": "B1", "lat": 40.71, "lng": -74.0, "speed": 28.5, "heading": 90, "timestamp": "2024-05-02T07:21:04Z"}

    - 200 OK with the refreshed snapshot
    - 404 not_tracking, 409 stale_update (nothing changed), 422 malformed coordinates
    """
    snapshot = await tracking.update_location(principal, payload)
    return ok(snapshot.model_dump(mode="json"))


@router.post("/emergency")
async def report_emergency(
    payload: EmergencyReport,
    principal: Principal = Depends(driver_or_admin),
    tracking: TrackingService = Depends(get_tracking),
):
    """Driver emergency; broadcast immediately to the bus, its children and admins."""
    snapshot = await tracking.report_emergency(principal, payload)
    return ok(snapshot.model_dump(mode="json"))


@router.post("/end")
async def end_tracking(
    payload: TrackingEnd,
    principal: Principal = Depends(driver_or_admin),
    tracking: TrackingService = Depends(get_tracking),
):
    """Driver ends the journey; the bus stops being reported as tracking."""
    snapshot = await tracking.end_tracking(principal, payload)
    return ok(snapshot.model_dump(mode="json"))


@router.post("/connection")
async def update_connection_info(
    payload: ConnectionInfoUpdate,
    principal: Principal = Depends(driver_or_admin),
    tracking: TrackingService = Depends(get_tracking),
):
    """Driver device health (signal, network type, battery)."""
    info = await tracking.update_connection_info(principal, payload)
    return ok(info.model_dump())


@router.get("/bus/{bus_id}")
async def get_bus_tracking(
    bus_id: str,
    principal: Principal = Depends(get_current_principal),
    tracking: TrackingService = Depends(get_tracking),
):
    """
    Cold-start query for one bus.

    Response JSON:
    {"ok": true, "data": {"active": true, "bus_id": "B1", "snapshot": {...}}}
    or, when the bus is not tracking:
    {"ok": true, "data": {"active": false, "bus_id": "B1", "snapshot": null, "message": "..."}}
    """
    return ok(tracking.get_bus_tracking(bus_id, principal).model_dump(mode="json"))


@router.get("/bus/{bus_id}/history")
async def get_bus_history(
    bus_id: str,
    principal: Principal = Depends(require_roles(Role.DRIVER, Role.ADMIN)),
    tracking: TrackingService = Depends(get_tracking),
):
    """
    Today's domain events for the bus, every journey it ran so far.

    Response JSON:
    {"ok": true, "data": {"bus_id": "B1", "date": "2024-05-02", "count": 7,
                          "sessions": [{"route_id": "R1", "started_at": "...", "status": "completed", "event_count": 7}],
                          "events": [...]}}
    """
    return ok(tracking.get_bus_history(bus_id, principal))


@router.get("/bus/{bus_id}/history/{service_date}")
async def get_bus_history_for_day(
    bus_id: str,
    service_date: date,
    principal: Principal = Depends(require_roles(Role.DRIVER, Role.ADMIN)),
    tracking: TrackingService = Depends(get_tracking),
):
    """Same as the history above, for an earlier service day still retained."""
    return ok(tracking.get_bus_history(bus_id, principal, service_date))


@router.get("/child/{child_id}")
async def get_child_bus_tracking(
    child_id: str,
    principal: Principal = Depends(get_current_principal),
    tracking: TrackingService = Depends(get_tracking),
):
    """Cold-start query for the bus serving a child (parents: own children only)."""
    return ok(tracking.get_child_bus_tracking(child_id, principal).model_dump(mode="json"))
