import pytest

from conftest import S1, auth_headers

DRIVER = auth_headers("D1", "driver")
OTHER_DRIVER = auth_headers("D2", "driver")
PARENT = auth_headers("P1", "parent")
OTHER_PARENT = auth_headers("P2", "parent")
ADMIN = auth_headers("A1", "admin")


async def start(client, headers=DRIVER):
    return await client.post("/tracking/start", json={"busId": "B1", "routeId": "R1"}, headers=headers)


def update(lat=S1[0] + 0.0003, lng=S1[1], ts="2024-05-02T07:10:00Z", **extra):
    return {"busId": "B1", "lat": lat, "lng": lng, "speed": 20, "heading": 90, "timestamp": ts, **extra}


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["data"]["active_journeys"] == 0
    assert body["data"]["messages_delivered"] == 0
    assert body["data"]["messages_dropped"] == 0
    assert "X-Request-ID" in resp.headers


@pytest.mark.asyncio
async def test_start_then_update_returns_snapshot(api_client):
    resp = await start(api_client)
    assert resp.status_code == 201
    assert resp.json()["data"]["status"] == "en_route_to_school"

    resp = await api_client.post("/tracking/update", json=update(), headers=DRIVER)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["position"] == {"lat": pytest.approx(S1[0] + 0.0003), "lng": S1[1]}
    assert data["next_stop"]["stop_id"] == "S1"
    assert data["speed_kmph"] == 20


@pytest.mark.asyncio
async def test_missing_or_bad_token_is_401(api_client):
    resp = await api_client.post("/tracking/update", json=update())
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "data": None, "error": {"code": "401", "message": "Missing Authorization token"}}

    resp = await api_client.get("/tracking/bus/B1", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Invalid token"


@pytest.mark.asyncio
async def test_token_in_query_string_is_accepted(api_client):
    token = PARENT["Authorization"].split()[1]
    resp = await api_client.get(f"/tracking/bus/B1?token={token}")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_parent_cannot_send_driver_commands(api_client):
    resp = await start(api_client, PARENT)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_wrong_driver_is_forbidden(api_client):
    resp = await start(api_client, OTHER_DRIVER)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


@pytest.mark.asyncio
async def test_second_start_is_conflict(api_client):
    await start(api_client)
    resp = await start(api_client)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "already_tracking"


@pytest.mark.asyncio
async def test_update_for_idle_bus_is_404(api_client):
    resp = await api_client.post("/tracking/update", json=update(), headers=DRIVER)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_tracking"


@pytest.mark.asyncio
async def test_stale_update_is_409_and_keeps_position(api_client):
    await start(api_client)
    await api_client.post("/tracking/update", json=update(ts="2024-05-02T07:10:00Z"), headers=DRIVER)

    resp = await api_client.post("/tracking/update", json=update(lat=40.0, ts="2024-05-02T07:09:00Z"), headers=DRIVER)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "stale_update"

    bus = (await api_client.get("/tracking/bus/B1", headers=DRIVER)).json()["data"]
    assert bus["snapshot"]["position"]["lat"] == pytest.approx(S1[0] + 0.0003)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    b'{"busId": "B1", "lat": NaN, "lng": -74.0}',
    b'{"busId": "B1", "lat": 91, "lng": -74.0}',
    b'{"busId": "B1", "lat": 40.7, "lng": -181}',
    b'{"busId": "B1", "lat": 40.7, "lng": -74.0, "heading": 400}',
    b'{"busId": "", "lat": 40.7, "lng": -74.0}',
    b'{"lat": 40.7, "lng": -74.0}',
])
async def test_malformed_update_is_rejected(api_client, body):
    await start(api_client)
    resp = await api_client.post(
        "/tracking/update",
        content=body,
        headers={**DRIVER, "Content-Type": "application/json"},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_non_finite_coordinate_gets_the_error_envelope(api_client):
    await start(api_client)
    resp = await api_client.post(
        "/tracking/update",
        content=b'{"busId": "B1", "lat": NaN, "lng": -74.0}',
        headers={**DRIVER, "Content-Type": "application/json"},
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "validation_error"
    assert "lat" in body["error"]["message"]


@pytest.mark.asyncio
async def test_start_on_a_route_of_another_bus_is_rejected(api_client):
    resp = await api_client.post("/tracking/start", json={"busId": "B1", "routeId": "R2"}, headers=DRIVER)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_cold_start_queries(api_client):
    resp = await api_client.get("/tracking/bus/B1", headers=PARENT)
    assert resp.json()["data"] == {
        "active": False,
        "bus_id": "B1",
        "child_id": None,
        "snapshot": None,
        "message": "No active tracking for this bus at the moment",
    }

    await start(api_client)
    data = (await api_client.get("/tracking/child/C1", headers=PARENT)).json()["data"]
    assert data["active"] is True
    assert data["bus_id"] == "B1"
    assert data["snapshot"]["route_id"] == "R1"

    resp = await api_client.get("/tracking/child/C1", headers=OTHER_PARENT)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Child not found or not authorized"


@pytest.mark.asyncio
async def test_emergency_and_end(api_client):
    await start(api_client)
    resp = await api_client.post("/tracking/emergency", json={"busId": "B1", "detail": "Accident"}, headers=DRIVER)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "emergency"

    resp = await api_client.post("/tracking/end", json={"busId": "B1"}, headers=DRIVER)
    assert resp.status_code == 200

    history = (await api_client.get("/tracking/bus/B1/history", headers=DRIVER)).json()["data"]
    assert [e["type"] for e in history["events"]] == ["tracking_started", "emergency", "tracking_ended"]


@pytest.mark.asyncio
async def test_history_is_not_for_parents(api_client):
    resp = await api_client.get("/tracking/bus/B1/history", headers=PARENT)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_connection_info(api_client):
    await start(api_client)
    resp = await api_client.post(
        "/tracking/connection",
        json={"busId": "B1", "signalStrength": "moderate", "batteryLevel": 55, "connectionType": "5G"},
        headers=DRIVER,
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {
        "signal_strength": "moderate",
        "connection_type": "5G",
        "battery_level": 55,
        "device_info": None,
    }

    resp = await api_client.post("/tracking/connection", json={"busId": "B1", "signalStrength": "great"}, headers=DRIVER)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_admin_fleet_overview(api_client):
    await start(api_client)
    resp = await api_client.get("/admin/fleet/overview", headers=ADMIN)
    assert resp.status_code == 200
    buses = {b["bus_id"]: b for b in resp.json()["data"]["buses"]}
    assert buses["B1"]["tracking"]["status"] == "en_route_to_school"
    assert buses["B2"]["tracking"] is None

    resp = await api_client.get("/admin/fleet/overview", headers=DRIVER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_history_for_a_given_day(api_client):
    await start(api_client)
    await api_client.post("/tracking/emergency", json={"busId": "B1", "detail": "Smoke", "lat": 40.1, "lng": -74.2},
                          headers=DRIVER)

    resp = await api_client.get("/tracking/bus/B1/history/2024-05-02", headers=ADMIN)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["date"] == "2024-05-02"
    assert data["sessions"][0]["route_id"] == "R1"
    assert data["events"][-1]["coordinates"] == {"lat": 40.1, "lng": -74.2}

    resp = await api_client.get("/tracking/bus/B1/history/2024-05-01", headers=ADMIN)
    assert resp.json()["data"]["count"] == 0

    resp = await api_client.get("/tracking/bus/B1/history/yesterday", headers=ADMIN)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"
