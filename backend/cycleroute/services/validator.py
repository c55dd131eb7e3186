from __future__ import annotations

from typing import List, Optional, Tuple
import math

from cycleroute.config import RouteLimits
from cycleroute.errors import RouteValidationError
from cycleroute.models import Location, RouteRequest
from cycleroute.services.geo import Coordinate
from cycleroute.services.synthesizer import Targets


def _check_location(loc: Optional[Location], field: str) -> Coordinate:
    if loc is None:
        raise RouteValidationError(field, "is required")
    if not math.isfinite(loc.lat) or not -90.0 <= loc.lat <= 90.0:
        raise RouteValidationError(f"{field}.lat", f"latitude must be within [-90, 90], got {loc.lat}")
    if not math.isfinite(loc.lon) or not -180.0 <= loc.lon <= 180.0:
        raise RouteValidationError(f"{field}.lon", f"longitude must be within [-180, 180], got {loc.lon}")
    return Coordinate(loc.lat, loc.lon)


def _check_target(value: Optional[float], field: str, maximum: float) -> Optional[float]:
    if value is None:
        return None
    if not math.isfinite(value) or value < 0:
        raise RouteValidationError(field, f"must be a non-negative number, got {value}")
    if value > maximum:
        raise RouteValidationError(field, f"must not exceed {maximum:g}, got {value}")
    return float(value)


def validate_route_request(
    request: RouteRequest,
    limits: RouteLimits,
) -> Tuple[List[Tuple[str, Coordinate]], Optional[Targets]]:
    """
    Check a request against `limits` and normalise it.

    Returns the ordered anchors as (field name, coordinate): start, each waypoint,
    end. Targets are None in direct mode. Raises RouteValidationError naming the
    first offending field; never mutates the request.
    """
    waypoints = request.waypoints or []
    if len(waypoints) > limits.max_waypoints:
        raise RouteValidationError(
            "waypoints",
            f"at most {limits.max_waypoints} waypoints are allowed, got {len(waypoints)}",
        )

    anchors = [("start_point", _check_location(request.start_point, "start_point"))]
    for i, wp in enumerate(waypoints):
        field = f"waypoints[{i}]"
        anchors.append((field, _check_location(wp, field)))
    anchors.append(("end_point", _check_location(request.end_point, "end_point")))

    prefs = request.preferences
    if prefs is None:
        return anchors, None

    distance_km = _check_target(
        prefs.target_distance_km,
        "preferences.target_distance_km",
        limits.max_target_distance_km,
    )
    gain_m = _check_target(
        prefs.target_elevation_gain_m,
        "preferences.target_elevation_gain_m",
        limits.max_target_elevation_gain_m,
    )
    targets = Targets(
        distance_m=None if distance_km is None else distance_km * 1000.0,
        elevation_gain_m=gain_m,
    )
    return anchors, (targets if targets.active else None)
