import polyline
import pytest

from cycleroute.config import AssemblyConfig
from cycleroute.services.assembler import assemble_response, encode_geometry, moving_time_s
from cycleroute.services.elevation_profile import ElevationProfile
from cycleroute.services.providers import Spot, StopType
from cycleroute.services.stops import RankedStop


def test_moving_time():
    assert moving_time_s(18000.0, 18.0) == pytest.approx(3600.0)
    assert moving_time_s(0.0, 18.0) == 0.0


def test_assemble_response(grid_point):
    points = [grid_point(0, c) for c in range(4)]
    stop = RankedStop(Spot("Old Gate", StopType.LANDMARK, 4.5, *grid_point(0, 1)), 0.0)
    resp = assemble_response(points, 547.7, ElevationProfile(3.2, 0.0), [stop], AssemblyConfig(average_speed_kmh=20.0))
    assert resp.summary.total_distance_m == pytest.approx(547.7)
    assert resp.summary.total_elevation_gain_m == pytest.approx(3.2)
    assert resp.summary.estimated_moving_time_s == pytest.approx(98.6, abs=0.1)
    assert len(polyline.decode(resp.geometry)) == 4
    assert resp.stops[0].type == "landmark"
    assert resp.stops[0].location.lat == pytest.approx(grid_point(0, 1)[0])


def test_encode_geometry_round_trips(grid_point):
    points = [grid_point(r, r) for r in range(8)]
    decoded = polyline.decode(encode_geometry(points))
    assert len(decoded) == len(points)
