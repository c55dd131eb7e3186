"""
Elevation lookups used while building the road network.

Only nodes without an OSM `ele` tag are looked up. Tiles are 256x256 text grids
(comma separated metres, `e` for no data) addressed by slippy-map z/x/y.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple
import logging
import math

import numpy as np
import requests

logger = logging.getLogger(__name__)

TILE_SIZE = 256

# (layer, zoom) in preference order: 5 m mesh first, then 10 m mesh
DEFAULT_LAYERS: Tuple[Tuple[str, int], ...] = (("dem5a", 15), ("dem", 14))


@dataclass(frozen=True)
class TileCoord:
    z: int
    x: int
    y: int
    pixel_x: int
    pixel_y: int


def tile_coord(lat: float, lon: float, zoom: int) -> TileCoord:
    lat_rad = math.radians(lat)
    n = 2.0 ** zoom
    x = (lon + 180.0) / 360.0 * n
    y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    tx = int(x)
    ty = int(y)
    return TileCoord(
        z=zoom,
        x=tx,
        y=ty,
        pixel_x=min(TILE_SIZE - 1, int((x - tx) * TILE_SIZE)),
        pixel_y=min(TILE_SIZE - 1, int((y - ty) * TILE_SIZE)),
    )


def parse_tile_text(content: str) -> Optional[np.ndarray]:
    rows: List[List[float]] = []
    for line in content.strip().splitlines():
        if not line.strip():
            continue
        rows.append([float("nan") if v.strip() == "e" else float(v) for v in line.split(",")])
    if len(rows) != TILE_SIZE or any(len(r) != TILE_SIZE for r in rows):
        return None
    return np.asarray(rows, dtype=np.float64)


class ElevationSource(ABC):
    @abstractmethod
    def elevation(self, lat: float, lon: float) -> Optional[float]:
        """Height above sea level in metres, or None when unknown."""


class DemTileElevationSource(ElevationSource):
    """
    Looks up heights in DEM text tiles served over HTTP.
    `url_template` takes {layer}, {z}, {x}, {y}; e.g.
    https://cyberjapandata.gsi.go.jp/xyz/{layer}/{z}/{x}/{y}.txt
    """

    def __init__(
        self,
        url_template: str,
        layers: Sequence[Tuple[str, int]] = DEFAULT_LAYERS,
        timeout_s: float = 5.0,
        cache_tiles: int = 256,
        session: Optional[requests.Session] = None,
    ):
        self.url_template = url_template
        self.layers = tuple(layers)
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self._tile = lru_cache(maxsize=cache_tiles)(self._fetch_tile)

    def _fetch_tile(self, layer: str, z: int, x: int, y: int) -> Optional[np.ndarray]:
        url = self.url_template.format(layer=layer, z=z, x=x, y=y)
        try:
            resp = self.session.get(url, timeout=self.timeout_s)
        except requests.RequestException as e:
            logger.warning("Elevation tile %s failed: %s", url, e)
            return None
        if resp.status_code != 200:
            logger.debug("Elevation tile %s returned %d", url, resp.status_code)
            return None
        grid = parse_tile_text(resp.text)
        if grid is None:
            logger.debug("Elevation tile %s could not be parsed", url)
        return grid

    def elevation(self, lat: float, lon: float) -> Optional[float]:
        for layer, zoom in self.layers:
            tc = tile_coord(lat, lon, zoom)
            grid = self._tile(layer, tc.z, tc.x, tc.y)
            if grid is None:
                continue
            value = grid[tc.pixel_y, tc.pixel_x]
            if not np.isnan(value):
                return float(value)
        return None
