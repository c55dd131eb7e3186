from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple
import logging

import shapely
from shapely.geometry import LineString, Point, Polygon

from cycleroute.config import StopsConfig
from cycleroute.errors import ProviderUnavailable
from cycleroute.services.geo import LocalProjection
from cycleroute.services.providers import POIProvider, Spot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedStop:
    spot: Spot
    distance_from_path_m: float


@dataclass
class Corridor:
    polygon_wgs84: Polygon  # (lon, lat)
    path_xy: LineString  # metres in `projection`
    projection: LocalProjection


def build_corridor(points: Sequence[Tuple[float, float]], half_width_m: float) -> Corridor:
    """
    Buffer the path by `half_width_m` in a local metric projection centred on it
    and bring the polygon back to lon/lat for the provider query.
    """
    lat0 = sum(p[0] for p in points) / len(points)
    lon0 = sum(p[1] for p in points) / len(points)
    proj = LocalProjection.around(lat0, lon0)

    xy = [proj.to_xy(lat, lon) for lat, lon in points]
    if len(xy) == 1 or all(c == xy[0] for c in xy):
        # degenerate route: a single point, keep a zero-length line for distance math
        line = LineString([xy[0], xy[0]])
        poly_xy = Point(xy[0]).buffer(half_width_m)
    else:
        line = LineString(xy)
        poly_xy = line.buffer(half_width_m)

    poly_wgs84 = shapely.transform(poly_xy, lambda x, y: proj.tf_inv.transform(x, y), interleaved=False)
    return Corridor(polygon_wgs84=poly_wgs84, path_xy=line, projection=proj)


def rank_stops(candidates: Sequence[Spot], corridor: Corridor, cfg: StopsConfig) -> List[RankedStop]:
    scored: List[Tuple[Tuple[float, float, str], RankedStop, Point]] = []
    for spot in candidates:
        p = Point(corridor.projection.to_xy(spot.lat, spot.lon))
        d = float(corridor.path_xy.distance(p))
        if d > cfg.corridor_half_width_m:
            continue
        scored.append(((-spot.rating, d, spot.name), RankedStop(spot, round(d, 1)), p))

    scored.sort(key=lambda t: t[0])

    kept: List[RankedStop] = []
    kept_points: List[Point] = []
    for _, ranked, p in scored:
        if any(p.distance(q) <= cfg.dedupe_tolerance_m for q in kept_points):
            continue
        kept.append(ranked)
        kept_points.append(p)
        if len(kept) >= cfg.max_stops:
            break
    return kept


def find_stops(
    provider: POIProvider,
    points: Sequence[Tuple[float, float]],
    cfg: StopsConfig,
) -> List[RankedStop]:
    """
    Stops along the route, best rated first and closest first among equals.
    Never raises: a failing provider only costs the response its stops.
    """
    if not points or cfg.max_stops <= 0:
        return []

    try:
        corridor = build_corridor(points, cfg.corridor_half_width_m)
        candidates = provider.query(corridor.polygon_wgs84)
    except ProviderUnavailable as e:
        logger.warning("POI provider unavailable, returning no stops: %s", e)
        return []
    except Exception:
        logger.exception("Stop lookup failed, returning no stops")
        return []

    return rank_stops(candidates, corridor, cfg)
