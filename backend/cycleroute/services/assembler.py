from __future__ import annotations

from typing import List, Sequence, Tuple

import polyline

from cycleroute.config import AssemblyConfig
from cycleroute.errors import InternalInvariantError
from cycleroute.models import Location, RouteResponse, RouteSummary, Stop
from cycleroute.services.elevation_profile import ElevationProfile
from cycleroute.services.stops import RankedStop


def moving_time_s(distance_m: float, average_speed_kmh: float) -> float:
    if distance_m <= 0 or average_speed_kmh <= 0:
        return 0.0
    return distance_m / (average_speed_kmh / 3.6)


def encode_geometry(points: Sequence[Tuple[float, float]], precision: int = 5) -> str:
    """Encode and make sure the string decodes back onto the same points."""
    encoded = polyline.encode(points, precision)
    decoded = polyline.decode(encoded, precision)
    if len(decoded) != len(points):
        raise InternalInvariantError(f"polyline round trip changed point count: {len(points)} -> {len(decoded)}")
    tol = 10 ** -precision
    for (lat, lon), (dlat, dlon) in zip(points, decoded):
        if abs(lat - dlat) > tol or abs(lon - dlon) > tol:
            raise InternalInvariantError("polyline round trip moved a point beyond the coordinate precision")
    return encoded


def assemble_response(
    points: Sequence[Tuple[float, float]],
    distance_m: float,
    profile: ElevationProfile,
    stops: List[RankedStop],
    cfg: AssemblyConfig,
) -> RouteResponse:
    if not points:
        raise InternalInvariantError("resolved path has no points")
    distance_m = max(0.0, float(distance_m))
    summary = RouteSummary(
        total_distance_m=round(distance_m, 1),
        total_elevation_gain_m=round(max(0.0, profile.gain_m), 1),
        estimated_moving_time_s=round(moving_time_s(distance_m, cfg.average_speed_kmh), 1),
    )
    return RouteResponse(
        summary=summary,
        geometry=encode_geometry(points, cfg.polyline_precision),
        stops=[
            Stop(
                name=r.spot.name,
                type=r.spot.type.value,
                rating=r.spot.rating,
                location=Location(lat=r.spot.lat, lon=r.spot.lon),
            )
            for r in stops
        ],
    )
