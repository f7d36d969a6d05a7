# tools/gps_simulator.py
"""GPS simulator that drives one bus along its route through the REST API.

Development aid: start the API (python main.py), then

    python -m tools.gps_simulator B1 R1 --driver D1

It starts tracking, walks the bus toward each stop in sequence with a little
positional jitter, dwells inside each geo-fence long enough to trigger an
arrival, and ends tracking after the last stop.
"""
import argparse
import logging
import random
import time
from datetime import datetime, timezone

import httpx

from config.settings import settings
from core.auth import create_access_token
from core.logging import configure_logging
from services.fleet_service import FleetService

logger = logging.getLogger(__name__)


def _interpolate(a, b, fraction):
    return a + (b - a) * fraction


def route_fixes(start, stops, steps_between: int = 5, dwell: int = 2, jitter_deg: float = 0.00005):
    """Yield (lat, lng) fixes from `start` through every stop, dwelling `dwell` fixes at each."""
    lat, lng = start
    for stop in stops:
        for i in range(1, steps_between + 1):
            f = i / steps_between
            yield (
                _interpolate(lat, stop.lat, f) + random.uniform(-jitter_deg, jitter_deg),
                _interpolate(lng, stop.lng, f) + random.uniform(-jitter_deg, jitter_deg),
            )
        for _ in range(dwell):
            yield stop.lat + random.uniform(-jitter_deg, jitter_deg), stop.lng + random.uniform(-jitter_deg, jitter_deg)
        lat, lng = stop.lat, stop.lng


def simulate(bus_id: str, route_id: str, driver_id: str, interval_sec: float = 1.0, speed_kmph: float = 30.0):
    fleet = FleetService.from_file(settings.FLEET_DATA_PATH, timezone=settings.SERVICE_TIMEZONE)
    route = fleet.get_route(route_id, datetime.now(fleet.tz).date())
    if route is None or not route.stops:
        raise SystemExit(f"Route {route_id} not found or has no stops in {settings.FLEET_DATA_PATH}")

    token = create_access_token(driver_id, "driver")
    headers = {"Authorization": f"Bearer {token}"}
    first = route.stops[0]
    start = (first.lat + 0.005, first.lng + 0.005)

    with httpx.Client(base_url=settings.TRACKING_API_URL, headers=headers, timeout=5.0) as client:
        resp = client.post("/tracking/start", json={"busId": bus_id, "routeId": route_id, "lat": start[0], "lng": start[1]})
        resp.raise_for_status()
        logger.info("Tracking started for %s on %s", bus_id, route_id)

        for lat, lng in route_fixes(start, route.stops):
            time.sleep(interval_sec)
            payload = {
                "busId": bus_id,
                "lat": round(lat, 6),
                "lng": round(lng, 6),
                "speed": speed_kmph,
                "heading": 0,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            resp = client.post("/tracking/update", json=payload)
            if resp.status_code != 200:
                logger.warning("Update rejected (%s): %s", resp.status_code, resp.text)
                continue
            data = resp.json()["data"]
            nxt = data.get("next_stop") or {}
            logger.info("status=%s next=%s dist=%sm eta=%s delay=%.1fmin",
                        data["status"], nxt.get("stop_id"), nxt.get("distance_m"), nxt.get("eta"),
                        data["cumulative_delay_minutes"])

        client.post("/tracking/end", json={"busId": bus_id}).raise_for_status()
        logger.info("Tracking ended for %s", bus_id)


def main():
    parser = argparse.ArgumentParser(description="Drive a simulated bus along its route")
    parser.add_argument("bus_id")
    parser.add_argument("route_id")
    parser.add_argument("--driver", required=True, help="driver user id assigned to the bus")
    parser.add_argument("--interval", type=float, default=1.0, help="seconds between fixes")
    parser.add_argument("--speed", type=float, default=30.0, help="reported speed in km/h")
    args = parser.parse_args()
    configure_logging(settings.LOG_LEVEL)
    simulate(args.bus_id, args.route_id, args.driver, args.interval, args.speed)


if __name__ == "__main__":
    main()
