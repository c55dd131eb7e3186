from concurrent.futures import ThreadPoolExecutor

import polyline
from fastapi.testclient import TestClient

from cycleroute.errors import ProviderUnavailable
from cycleroute.main import api, get_engine
from cycleroute.services.engine import RouteEngine
from cycleroute.services.geo import haversine_m

URL = "/api/v1/route/generate"


def _loc(p):
    return {"lat": p[0], "lon": p[1]}


def _first_near(points, target, within_m=30.0):
    for i, (lat, lon) in enumerate(points):
        if haversine_m(lat, lon, target[0], target[1]) <= within_m:
            return i
    return None


def test_health_reports_providers(client, engine, monkeypatch):
    monkeypatch.setattr(api.state, "engine", engine)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "road_network": {"nodes": 66, "edges": 219}, "spots": 6}


def test_direct_route(client, grid_point):
    r = client.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": _loc(grid_point(0, 7))})
    assert r.status_code == 200
    assert r.headers["X-Route-Best-Effort"] == "false"
    body = r.json()
    assert set(body) == {"summary", "geometry", "stops"}
    assert body["summary"]["total_distance_m"] > 0
    assert [s["name"] for s in body["stops"]] == ["Old Gate", "Corner Cafe", "Mini Mart"]
    assert body["stops"][0]["type"] == "landmark"


def test_invalid_latitude_is_400_with_field(client, grid_point):
    r = client.post(URL, json={"start_point": {"lat": 200, "lon": 139.0}, "end_point": _loc(grid_point(0, 0))})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "validation_error"
    assert body["field"] == "start_point.lat"
    assert "geometry" not in body


def test_waypoint_cap_is_400(client, grid_point):
    waypoints = [_loc(grid_point(1, 1))] * 16
    r = client.post(
        URL,
        json={"start_point": _loc(grid_point(0, 0)), "end_point": _loc(grid_point(7, 7)), "waypoints": waypoints},
    )
    assert r.status_code == 400
    assert r.json()["field"] == "waypoints"
    assert "geometry" not in r.json()


def test_missing_end_point_is_400(client, grid_point):
    r = client.post(URL, json={"start_point": _loc(grid_point(0, 0))})
    assert r.status_code == 400
    assert r.json()["field"] == "end_point"


def test_negative_preference_is_400(client, grid_point):
    r = client.post(
        URL,
        json={
            "start_point": _loc(grid_point(0, 0)),
            "end_point": _loc(grid_point(7, 7)),
            "preferences": {"target_distance_km": -3},
        },
    )
    assert r.status_code == 400
    assert r.json()["field"] == "preferences.target_distance_km"


def test_disconnected_end_is_422(client, grid_point):
    r = client.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": {"lat": 35.05, "lon": 139.05}})
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "no_route_found"
    assert body["leg_index"] == 0


def test_unsnappable_end_is_422(client, grid_point):
    r = client.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": {"lat": 36.0, "lon": 139.0}})
    assert r.status_code == 422
    assert r.json()["field"] == "end_point"


def test_degenerate_route(client, grid_point):
    p = grid_point(3, 3)
    r = client.post(URL, json={"start_point": _loc(p), "end_point": {"lat": p[0] + 1e-7, "lon": p[1]}})
    assert r.status_code == 200
    body = r.json()
    assert body["summary"]["total_distance_m"] == 0.0
    assert body["summary"]["estimated_moving_time_s"] == 0.0
    assert len(polyline.decode(body["geometry"])) == 1


def test_waypoints_visited_in_order(client, grid_point):
    a, b = grid_point(6, 1), grid_point(1, 6)
    r = client.post(
        URL,
        json={
            "start_point": _loc(grid_point(0, 0)),
            "end_point": _loc(grid_point(7, 7)),
            "waypoints": [_loc(a), _loc(b)],
        },
    )
    assert r.status_code == 200
    points = polyline.decode(r.json()["geometry"])
    ia = _first_near(points, a)
    ib = _first_near(points, b)
    assert ia is not None and ib is not None
    assert ia < ib
    assert haversine_m(*points[0], *grid_point(0, 0)) < 1.0
    assert haversine_m(*points[-1], *grid_point(7, 7)) < 1.0


def test_distance_target_within_band_or_best_effort(client, grid_point):
    r = client.post(
        URL,
        json={
            "start_point": _loc(grid_point(0, 0)),
            "end_point": _loc(grid_point(0, 3)),
            "preferences": {"target_distance_km": 4},
        },
    )
    assert r.status_code == 200
    distance = r.json()["summary"]["total_distance_m"]
    assert abs(distance - 4000.0) <= 400.0 or r.headers["X-Route-Best-Effort"] == "true"


def test_elevation_alias_accepted(client, grid_point):
    r = client.post(
        URL,
        json={
            "start_point": _loc(grid_point(0, 0)),
            "end_point": _loc(grid_point(0, 3)),
            "preferences": {"target_distance_km": 3, "target_elevation_m": 50},
        },
    )
    assert r.status_code == 200
    assert r.json()["summary"]["total_elevation_gain_m"] > 0


def test_capacity_exceeded_is_429(client, engine, grid_point):
    engine.queue_timeout_s = 0
    slots = engine._slots
    held = 0
    while slots.acquire(blocking=False):
        held += 1
    try:
        r = client.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": _loc(grid_point(0, 3))})
    finally:
        for _ in range(held):
            slots.release()
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "1"


def test_engine_not_loaded_is_503(client, grid_point):
    api.dependency_overrides.clear()
    r = client.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": _loc(grid_point(0, 3))})
    assert r.status_code == 503
    assert r.json()["error"] == "provider_unavailable"


def test_fifty_concurrent_requests_with_default_limits(network, spot_index, grid_point):
    default_engine = RouteEngine(network, spot_index)
    api.dependency_overrides[get_engine] = lambda: default_engine
    body = {
        "start_point": _loc(grid_point(0, 0)),
        "end_point": _loc(grid_point(0, 3)),
        "preferences": {"target_distance_km": 3},
    }
    c = TestClient(api)
    try:
        with ThreadPoolExecutor(max_workers=50) as pool:
            responses = list(pool.map(lambda _: c.post(URL, json=body), range(50)))
    finally:
        api.dependency_overrides.clear()
    assert [r.status_code for r in responses] == [200] * 50


def test_startup_loads_engine(engine, monkeypatch):
    monkeypatch.setattr(api.state, "engine", None)
    monkeypatch.setattr(RouteEngine, "from_settings", classmethod(lambda cls, s: engine))
    with TestClient(api) as c:
        assert api.state.engine is engine
        assert c.get("/health").json()["road_network"] == {"nodes": 66, "edges": 219}


def test_startup_without_network_serves_503(grid_point, monkeypatch):
    def unavailable(cls, s):
        raise ProviderUnavailable("road_network", "file not found")

    monkeypatch.setattr(api.state, "engine", None)
    monkeypatch.setattr(RouteEngine, "from_settings", classmethod(unavailable))
    with TestClient(api) as c:
        assert c.get("/health").json()["road_network"] is None
        r = c.post(URL, json={"start_point": _loc(grid_point(0, 0)), "end_point": _loc(grid_point(0, 3))})
    assert r.status_code == 503
