"""
Request pipeline: validate, synthesize, profile, enrich with stops, assemble.

A RouteEngine owns the two read-only providers and the semaphore that bounds how
many syntheses run at once. It holds no per-request state, so one instance
serves every worker thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import threading
import time

from cycleroute.config import AssemblyConfig, RouteLimits, SearchConfig, Settings, StopsConfig
from cycleroute.errors import CapacityExceeded, ProviderUnavailable
from cycleroute.models import RouteRequest, RouteResponse
from cycleroute.services.assembler import assemble_response
from cycleroute.services.elevation import DemTileElevationSource
from cycleroute.services.elevation_profile import build_profile
from cycleroute.services.geo import Coordinate
from cycleroute.services.graph import RoadNetwork, build_road_network
from cycleroute.services.osm import load_or_fetch_osm
from cycleroute.services.providers import POIProvider
from cycleroute.services.spots import load_spots_csv
from cycleroute.services.stops import find_stops
from cycleroute.services.synthesizer import Deadline, Targets, snap_anchors, synthesize
from cycleroute.services.validator import validate_route_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteResult:
    response: RouteResponse
    best_effort: bool
    iterations: int = 0


class RouteEngine:
    def __init__(
        self,
        network: RoadNetwork,
        poi_provider: Optional[POIProvider] = None,
        limits: Optional[RouteLimits] = None,
        search: Optional[SearchConfig] = None,
        assembly: Optional[AssemblyConfig] = None,
        stops: Optional[StopsConfig] = None,
        max_concurrent: int = 8,
        queue_timeout_s: float = 10.0,
        request_timeout_s: Optional[float] = 10.0,
    ):
        self.network = network
        self.poi_provider = poi_provider
        self.limits = limits or RouteLimits()
        self.search = search or SearchConfig()
        self.assembly = assembly or AssemblyConfig()
        self.stops = stops or StopsConfig()
        self.queue_timeout_s = queue_timeout_s
        self.request_timeout_s = request_timeout_s
        self._slots = threading.BoundedSemaphore(max(1, max_concurrent))

    @classmethod
    def from_settings(cls, s: Settings) -> "RouteEngine":
        """
        Load the providers named in settings. A road network that cannot be loaded
        raises ProviderUnavailable; missing spots only disable stops.
        """
        elevation_source = None
        if s.elevation_tile_url:
            elevation_source = DemTileElevationSource(s.elevation_tile_url, timeout_s=s.elevation_timeout_s)

        osm = load_or_fetch_osm(s.road_network_path, s.overpass_bbox, s.overpass_url)
        network = build_road_network(osm, snap_radius_m=s.snap_radius_m, elevation_source=elevation_source)

        poi_provider: Optional[POIProvider] = None
        try:
            poi_provider = load_spots_csv(s.spots_csv_path)
        except ProviderUnavailable as e:
            logger.warning("Spots unavailable, routes will carry no stops: %s", e)

        return cls(
            network,
            poi_provider,
            limits=s.route_limits(),
            search=s.search_config(),
            assembly=s.assembly_config(),
            stops=s.stops_config(),
            max_concurrent=s.max_concurrent_syntheses,
            queue_timeout_s=s.queue_timeout_s,
            request_timeout_s=s.request_timeout_s,
        )

    def generate(self, request: RouteRequest) -> RouteResult:
        anchors, targets = validate_route_request(request, self.limits)

        if not self._slots.acquire(timeout=self.queue_timeout_s):
            logger.warning("Rejecting route request: no synthesis slot free within %.2fs", self.queue_timeout_s)
            raise CapacityExceeded(retry_after_s=1)
        try:
            return self._generate(anchors, targets)
        finally:
            self._slots.release()

    def _generate(self, anchors: List[Tuple[str, Coordinate]], targets: Optional[Targets]) -> RouteResult:
        started = time.monotonic()
        deadline = Deadline(self.request_timeout_s)

        nodes = snap_anchors(self.network, anchors)
        path = synthesize(self.network, nodes, targets, self.search, deadline)

        edges = path.edges(self.network)
        profile = build_profile(edges)
        distance_m = sum(e.length_m for e in edges)
        points = path.points(self.network)

        stops = []
        if self.poi_provider is not None:
            stops = find_stops(self.poi_provider, points, self.stops)

        response = assemble_response(points, distance_m, profile, stops, self.assembly)

        logger.info(
            "Route %s: %d legs, %.0f m, %.0f m gain, %d stops, %d search steps%s in %.3fs",
            "target" if targets is not None else "direct",
            len(path.legs),
            distance_m,
            profile.gain_m,
            len(stops),
            path.iterations,
            " (best effort)" if path.best_effort else "",
            time.monotonic() - started,
        )
        return RouteResult(response=response, best_effort=path.best_effort, iterations=path.iterations)
