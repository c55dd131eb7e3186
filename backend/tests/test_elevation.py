import math

import pytest

from cycleroute.services.elevation import DemTileElevationSource, parse_tile_text, tile_coord


def _tile(value):
    row = ",".join([value] * 256)
    return "\n".join([row] * 256) + "\n"


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, tiles):
        self.tiles = tiles
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        layer = url.split("/")[3]
        if layer not in self.tiles:
            return FakeResponse(404)
        return FakeResponse(200, self.tiles[layer])


def test_tile_coord_origin():
    tc = tile_coord(0.0, 0.0, 1)
    assert (tc.x, tc.y) == (1, 1)
    assert (tc.pixel_x, tc.pixel_y) == (0, 0)


def test_tile_coord_stays_inside_tile():
    tc = tile_coord(35.6586, 139.7454, 15)
    assert 0 <= tc.pixel_x < 256 and 0 <= tc.pixel_y < 256


def test_parse_tile_text():
    grid = parse_tile_text(_tile("12.5"))
    assert grid.shape == (256, 256)
    assert grid[10, 20] == 12.5
    assert math.isnan(parse_tile_text(_tile("e"))[0, 0])
    assert parse_tile_text("1,2,3\n4,5,6") is None


def test_falls_back_to_coarser_layer():
    session = FakeSession({"dem5a": _tile("e"), "dem": _tile("87.25")})
    src = DemTileElevationSource("http://dem.test/{layer}/{z}/{x}/{y}.txt", session=session)
    assert src.elevation(35.0, 139.0) == pytest.approx(87.25)
    assert [u.split("/")[3] for u in session.urls] == ["dem5a", "dem"]


def test_tiles_are_cached():
    session = FakeSession({"dem5a": _tile("10")})
    src = DemTileElevationSource("http://dem.test/{layer}/{z}/{x}/{y}.txt", session=session)
    assert src.elevation(35.0, 139.0) == 10.0
    assert src.elevation(35.00001, 139.00001) == 10.0
    assert len(session.urls) == 1


def test_unknown_when_no_layer_answers():
    src = DemTileElevationSource("http://dem.test/{layer}/{z}/{x}/{y}.txt", session=FakeSession({}))
    assert src.elevation(35.0, 139.0) is None
