from __future__ import annotations

from typing import Dict, List, Tuple, Optional, Any, Sequence
import logging
import math

import networkx as nx
from shapely import STRtree
from shapely.geometry import Point, box

from cycleroute.errors import Unroutable
from cycleroute.services.elevation import ElevationSource
from cycleroute.services.geo import Coordinate, geodesic_m, haversine_m
from cycleroute.services.osm import OSMBundle
from cycleroute.services.providers import GraphEdge, GraphNode, RoadNetworkProvider

logger = logging.getLogger(__name__)

METERS_PER_DEG_LAT = 111320.0

HIGHWAY_SUITABILITY: Dict[str, float] = {
    "cycleway": 1.0,
    "living_street": 0.9,
    "residential": 0.85,
    "unclassified": 0.75,
    "tertiary": 0.7,
    "tertiary_link": 0.65,
    "path": 0.6,
    "track": 0.55,
    "service": 0.55,
    "secondary": 0.5,
    "secondary_link": 0.45,
    "road": 0.4,
    "primary": 0.35,
    "primary_link": 0.3,
    "trunk": 0.15,
    "trunk_link": 0.15,
    "footway": 0.3,
    "pedestrian": 0.3,
    "bridleway": 0.25,
}

_YES = {"yes", "1", "true"}


class RoadNetwork(RoadNetworkProvider):
    """
    Immutable routable graph addressed by integer node/edge index.

    Adjacency is a tuple of outgoing edge indices per node, so the structure can be
    shared by any number of request threads without locking. A collapsed
    networkx DiGraph (shortest parallel edge per ordered node pair) is kept next to it
    for k-shortest alternates and bounded neighbourhood exploration.
    """

    def __init__(
        self,
        nodes: Sequence[GraphNode],
        edges: Sequence[GraphEdge],
        snap_radius_m: float = 300.0,
    ):
        self._nodes: Tuple[GraphNode, ...] = tuple(nodes)
        self._edges: Tuple[GraphEdge, ...] = tuple(edges)
        self.snap_radius_m = float(snap_radius_m)

        out: List[List[int]] = [[] for _ in self._nodes]
        for e in self._edges:
            out[e.source].append(e.index)
        self._out: Tuple[Tuple[int, ...], ...] = tuple(tuple(x) for x in out)

        self._tree = STRtree([Point(n.lon, n.lat) for n in self._nodes])

        G = nx.DiGraph()
        G.add_nodes_from(range(len(self._nodes)))
        for e in self._edges:
            if G.has_edge(e.source, e.target):
                if e.length_m < float(G[e.source][e.target]["length"]):
                    G[e.source][e.target]["length"] = e.length_m
                    G[e.source][e.target]["edge"] = e.index
            else:
                G.add_edge(e.source, e.target, length=e.length_m, edge=e.index)
        self._digraph = nx.freeze(G)

    # --- RoadNetworkProvider ---

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def node(self, index: int) -> GraphNode:
        return self._nodes[index]

    def edge(self, index: int) -> GraphEdge:
        return self._edges[index]

    def neighbors(self, node: GraphNode) -> Sequence[Tuple[GraphEdge, GraphNode]]:
        return tuple((self._edges[i], self._nodes[self._edges[i].target]) for i in self._out[node.index])

    def nearest_node(self, location: Coordinate) -> GraphNode:
        if not self._nodes:
            raise Unroutable("Road network is empty")

        radius = self.snap_radius_m
        dlat = radius / METERS_PER_DEG_LAT
        coslat = max(math.cos(math.radians(location.lat)), 1e-6)
        dlon = min(180.0, radius / (METERS_PER_DEG_LAT * coslat))
        window = box(location.lon - dlon, location.lat - dlat, location.lon + dlon, location.lat + dlat)

        best: Optional[GraphNode] = None
        bestd = float("inf")
        for i in sorted(int(i) for i in self._tree.query(window)):
            n = self._nodes[i]
            d = haversine_m(location.lat, location.lon, n.lat, n.lon)
            if d < bestd:
                bestd = d
                best = n

        if best is None or bestd > radius:
            raise Unroutable(
                f"No routable road within {radius:.0f} m of ({location.lat:.6f}, {location.lon:.6f})"
            )
        return best

    # --- read-only helpers for the synthesizer ---

    def out_edges(self, index: int) -> Tuple[int, ...]:
        return self._out[index]

    @property
    def digraph(self) -> nx.DiGraph:
        return self._digraph

    def edges_for_node_path(self, node_path: Sequence[int]) -> Tuple[int, ...]:
        G = self._digraph
        return tuple(int(G[a][b]["edge"]) for a, b in zip(node_path, node_path[1:]))


def _parse_osm(raw: dict) -> Tuple[Dict[int, Tuple[float, float, Dict[str, Any]]], List[Dict[str, Any]]]:
    nodes: Dict[int, Tuple[float, float, Dict[str, Any]]] = {}
    ways: List[Dict[str, Any]] = []
    for el in raw.get("elements", []):
        if el.get("type") == "node":
            nodes[int(el["id"])] = (float(el["lon"]), float(el["lat"]), el.get("tags", {}))
        elif el.get("type") == "way":
            ways.append(
                {
                    "id": int(el["id"]),
                    "nodes": [int(n) for n in el.get("nodes", [])],
                    "tags": el.get("tags", {}),
                }
            )
    return nodes, ways


def _is_rideable(tags: Dict[str, Any]) -> bool:
    highway = tags.get("highway")
    if highway is None:
        return False

    if highway in {"motorway", "motorway_link", "steps", "construction", "proposed", "platform", "elevator"}:
        return False

    bicycle = tags.get("bicycle")
    if bicycle == "no":
        return False

    if tags.get("access") in {"private", "no"} and bicycle not in {"yes", "designated", "permissive"}:
        return False

    # footways and pedestrian areas only when cycling is explicitly allowed
    if highway in {"footway", "pedestrian", "bridleway"} and bicycle not in {"yes", "designated", "permissive"}:
        return False

    return highway in HIGHWAY_SUITABILITY


def _suitability(tags: Dict[str, Any]) -> float:
    score = HIGHWAY_SUITABILITY.get(tags.get("highway"), 0.4)
    if tags.get("bicycle") == "designated":
        score = max(score, 0.9)
    if str(tags.get("cycleway", "")).startswith(("lane", "track")) or tags.get("cycleway:both") in {"lane", "track"}:
        score = min(1.0, score + 0.15)
    return round(score, 3)


def _directions(tags: Dict[str, Any]) -> Tuple[bool, bool]:
    """(forward allowed, backward allowed) for a bicycle on this way."""
    if tags.get("oneway:bicycle") == "no" or str(tags.get("cycleway", "")).startswith("opposite"):
        return True, True
    oneway = str(tags.get("oneway", "")).lower()
    if oneway == "-1":
        return False, True
    if oneway in _YES:
        return True, False
    if tags.get("junction") in {"roundabout", "circular"} and oneway != "no":
        return True, False
    return True, True


def _parse_ele(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).replace("m", "").strip())
    except ValueError:
        return None


def build_road_network(
    osm: OSMBundle,
    snap_radius_m: float = 300.0,
    elevation_source: Optional[ElevationSource] = None,
) -> RoadNetwork:
    nodes, ways = _parse_osm(osm.raw)

    index_of: Dict[int, int] = {}
    graph_nodes: List[GraphNode] = []
    missing_ele = 0

    def node_index(osm_id: int) -> int:
        nonlocal missing_ele
        if osm_id in index_of:
            return index_of[osm_id]
        lon, lat, tags = nodes[osm_id]
        ele = _parse_ele(tags.get("ele"))
        if ele is None and elevation_source is not None:
            ele = elevation_source.elevation(lat, lon)
        if ele is None:
            missing_ele += 1
            ele = 0.0
        idx = len(graph_nodes)
        graph_nodes.append(GraphNode(index=idx, lat=lat, lon=lon, elevation_m=float(ele), osm_id=osm_id))
        index_of[osm_id] = idx
        return idx

    raw_edges: List[Tuple[int, int, float, float, int, str]] = []
    skipped_ways = 0
    for w in ways:
        tags = w["tags"]
        if not _is_rideable(tags):
            skipped_ways += 1
            continue

        way_nodes = [nid for nid in w["nodes"] if nid in nodes]
        if len(way_nodes) < 2:
            continue

        forward, backward = _directions(tags)
        suitability = _suitability(tags)
        name = tags.get("name") or tags.get("ref") or ""

        for a, b in zip(way_nodes, way_nodes[1:]):
            if a == b:
                continue
            ia = node_index(a)
            ib = node_index(b)
            na = graph_nodes[ia]
            nb = graph_nodes[ib]
            dist = geodesic_m(na.lat, na.lon, nb.lat, nb.lon)
            if forward:
                raw_edges.append((ia, ib, dist, suitability, int(w["id"]), name))
            if backward:
                raw_edges.append((ib, ia, dist, suitability, int(w["id"]), name))

    edges: List[GraphEdge] = []
    for i, (u, v, dist, suitability, way_id, name) in enumerate(raw_edges):
        edges.append(
            GraphEdge(
                index=i,
                source=u,
                target=v,
                length_m=float(dist),
                elevation_delta_m=graph_nodes[v].elevation_m - graph_nodes[u].elevation_m,
                suitability=suitability,
                way_id=way_id,
                name=name,
            )
        )

    logger.info(
        "Road network built: %d nodes, %d edges (%d ways skipped, %d nodes without elevation)",
        len(graph_nodes),
        len(edges),
        skipped_ways,
        missing_ele,
    )
    return RoadNetwork(graph_nodes, edges, snap_radius_m=snap_radius_m)
