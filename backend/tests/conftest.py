import math

import pytest
from fastapi.testclient import TestClient

from cycleroute.config import SearchConfig
from cycleroute.main import api, get_engine
from cycleroute.services.engine import RouteEngine
from cycleroute.services.graph import build_road_network
from cycleroute.services.osm import OSMBundle
from cycleroute.services.providers import Spot, StopType
from cycleroute.services.spots import SpotIndex

# 8x8 grid town, ~220 m between rows and ~180 m between columns, with a hill
# peaking at row 5 / column 5. Column 7 is one-way northbound.
BASE_LAT = 35.0
BASE_LON = 139.0
STEP = 0.002
SIZE = 8
ISLAND = [(35.05, 139.05), (35.0505, 139.0505)]


def grid_node_id(r, c):
    return 1000 + r * 10 + c


def grid_latlon(r, c):
    return (BASE_LAT + r * STEP, BASE_LON + c * STEP)


def grid_ele(r, c):
    return round(20.0 + 80.0 * math.exp(-((r - 5) ** 2 + (c - 5) ** 2) / 6.0), 1)


def make_town_osm():
    elements = []
    for r in range(SIZE):
        for c in range(SIZE):
            lat, lon = grid_latlon(r, c)
            elements.append(
                {"type": "node", "id": grid_node_id(r, c), "lat": lat, "lon": lon, "tags": {"ele": str(grid_ele(r, c))}}
            )
    for i, (lat, lon) in enumerate(ISLAND):
        elements.append({"type": "node", "id": 5001 + i, "lat": lat, "lon": lon})

    for r in range(SIZE):
        elements.append(
            {
                "type": "way",
                "id": 100 + r,
                "nodes": [grid_node_id(r, c) for c in range(SIZE)],
                "tags": {"highway": "residential", "name": f"Row {r}"},
            }
        )
    for c in range(SIZE):
        tags = {"highway": "residential", "name": f"Column {c}"}
        if c == SIZE - 1:
            tags = {"highway": "tertiary", "oneway": "yes", "name": "North Street"}
        elements.append(
            {"type": "way", "id": 200 + c, "nodes": [grid_node_id(r, c) for r in range(SIZE)], "tags": tags}
        )

    elements.append({"type": "way", "id": 300, "nodes": [5001, 5002], "tags": {"highway": "residential"}})
    # not rideable, so the island stays disconnected
    elements.append({"type": "way", "id": 301, "nodes": [grid_node_id(0, 0), 5001], "tags": {"highway": "motorway"}})
    return {"version": 0.6, "elements": elements}


def make_spots():
    hill_lat, hill_lon = grid_latlon(5, 5)
    cafe_lat, cafe_lon = grid_latlon(0, 3)
    return [
        Spot("Corner Cafe", StopType.CAFE, 4.5, cafe_lat + 0.0002, cafe_lon),
        Spot("Corner Cafe (old listing)", StopType.CAFE, 4.0, cafe_lat + 0.0002, cafe_lon),
        Spot("Hilltop View", StopType.VIEWPOINT, 4.8, hill_lat, hill_lon),
        Spot("Mini Mart", StopType.CONVENIENCE, 3.5, *grid_latlon(0, 6)),
        Spot("Old Gate", StopType.LANDMARK, 4.5, *grid_latlon(0, 1)),
        Spot("Faraway Temple", StopType.LANDMARK, 5.0, 35.03, 139.03),
    ]


@pytest.fixture(scope="session")
def town_osm():
    return make_town_osm()


@pytest.fixture(scope="session")
def network(town_osm):
    return build_road_network(OSMBundle(raw=town_osm), snap_radius_m=300.0)


@pytest.fixture(scope="session")
def spot_index():
    return SpotIndex(make_spots())


@pytest.fixture
def grid_point():
    return grid_latlon


@pytest.fixture
def node_at(network):
    by_osm_id = {network.node(i).osm_id: network.node(i) for i in range(network.node_count)}

    def _node_at(r, c):
        return by_osm_id[grid_node_id(r, c)]

    return _node_at


@pytest.fixture
def search_config():
    # iteration bound only, so results never depend on machine speed
    return SearchConfig(max_iterations=30, time_budget_s=60.0)


@pytest.fixture
def engine(network, spot_index, search_config):
    return RouteEngine(network, spot_index, search=search_config, request_timeout_s=None)


@pytest.fixture
def client(engine):
    api.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(api)
    api.dependency_overrides.clear()
