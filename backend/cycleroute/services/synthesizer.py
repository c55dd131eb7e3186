"""
Route synthesis over the road network.

Direct mode stitches one lexicographic shortest path (distance, then elevation
gain, then node count) per consecutive anchor pair. Target mode seeds from the
direct route and runs a bounded local search (detour insertion and k-shortest
leg alternates) towards the requested distance / elevation gain. Every move acts
inside a single leg, so anchors (start, waypoints, end) are always visited in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from heapq import heappop, heappush
from itertools import islice
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple
import logging
import math
import threading
import time

import networkx as nx

from cycleroute.config import SearchConfig
from cycleroute.errors import NoRouteFound, SynthesisTimeout, Unroutable
from cycleroute.services.geo import Coordinate, haversine_m
from cycleroute.services.graph import RoadNetwork
from cycleroute.services.providers import GraphEdge

logger = logging.getLogger(__name__)

# haversine runs on a sphere while edge lengths are ellipsoidal; shrink the
# heuristic so it never overestimates
HEURISTIC_FACTOR = 0.99

SCORE_EPS = 1e-9

Leg = Tuple[int, ...]


class Deadline:
    """Monotonic-clock deadline that can also be cancelled explicitly."""

    def __init__(self, timeout_s: Optional[float] = None):
        self._expires_at: Optional[float] = None if timeout_s is None else time.monotonic() + timeout_s
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def within(self, seconds: float) -> "Deadline":
        """A deadline no later than `seconds` from now, sharing this one's cancellation."""
        limit = time.monotonic() + seconds
        child = Deadline()
        child._expires_at = limit if self._expires_at is None else min(limit, self._expires_at)
        child._cancelled = self._cancelled
        return child


@dataclass(frozen=True)
class Targets:
    distance_m: Optional[float] = None
    elevation_gain_m: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.distance_m is not None or self.elevation_gain_m is not None


@dataclass(frozen=True)
class PathMetrics:
    distance_m: float = 0.0
    gain_m: float = 0.0
    loss_m: float = 0.0

    def __add__(self, other: "PathMetrics") -> "PathMetrics":
        return PathMetrics(
            self.distance_m + other.distance_m,
            self.gain_m + other.gain_m,
            self.loss_m + other.loss_m,
        )

    def __sub__(self, other: "PathMetrics") -> "PathMetrics":
        return PathMetrics(
            self.distance_m - other.distance_m,
            self.gain_m - other.gain_m,
            self.loss_m - other.loss_m,
        )


def edges_metrics(network: RoadNetwork, edge_indices: Sequence[int]) -> PathMetrics:
    dist = 0.0
    gain = 0.0
    loss = 0.0
    for i in edge_indices:
        e = network.edge(i)
        dist += e.length_m
        if e.elevation_delta_m > 0:
            gain += e.elevation_delta_m
        else:
            loss -= e.elevation_delta_m
    return PathMetrics(dist, gain, loss)


@dataclass(frozen=True)
class ResolvedPath:
    anchors: Tuple[int, ...]  # node index of start, each waypoint, end
    legs: Tuple[Leg, ...]  # edge indices, one tuple per consecutive anchor pair
    best_effort: bool = False
    iterations: int = 0

    @property
    def edge_indices(self) -> Tuple[int, ...]:
        return tuple(e for leg in self.legs for e in leg)

    def edges(self, network: RoadNetwork) -> List[GraphEdge]:
        return [network.edge(i) for i in self.edge_indices]

    def node_indices(self, network: RoadNetwork) -> List[int]:
        nodes = [self.anchors[0]]
        for i in self.edge_indices:
            nodes.append(network.edge(i).target)
        return nodes

    def points(self, network: RoadNetwork) -> List[Tuple[float, float]]:
        return [(network.node(n).lat, network.node(n).lon) for n in self.node_indices(network)]


# --- snapping and shortest paths ---


def snap_anchors(network: RoadNetwork, locations: Sequence[Tuple[str, Coordinate]]) -> Tuple[int, ...]:
    anchors = []
    for field_name, loc in locations:
        try:
            anchors.append(network.nearest_node(loc).index)
        except Unroutable as e:
            raise Unroutable(e.message, field=field_name) from e
    return tuple(anchors)


def shortest_leg(network: RoadNetwork, source: int, target: int, leg_index: Optional[int] = None) -> Leg:
    """
    A* from source to target ordered by (distance, elevation gain, node count).
    The geographic heuristic only touches the distance component, so the
    lexicographic order of settled labels stays monotone.
    """
    if source == target:
        return ()

    tn = network.node(target)

    def h(i: int) -> float:
        n = network.node(i)
        return HEURISTIC_FACTOR * haversine_m(n.lat, n.lon, tn.lat, tn.lon)

    best: Dict[int, Tuple[float, float, int]] = {source: (0.0, 0.0, 0)}
    prev_edge: Dict[int, int] = {}
    closed: Set[int] = set()
    heap: List[Tuple[float, float, int, int]] = [(h(source), 0.0, 0, source)]

    while heap:
        _, _, _, u = heappop(heap)
        if u in closed:
            continue
        closed.add(u)
        if u == target:
            break
        dist_u, gain_u, count_u = best[u]
        for ei in network.out_edges(u):
            e = network.edge(ei)
            v = e.target
            if v in closed:
                continue
            label = (dist_u + e.length_m, gain_u + max(0.0, e.elevation_delta_m), count_u + 1)
            old = best.get(v)
            if old is None or label < old:
                best[v] = label
                prev_edge[v] = ei
                heappush(heap, (label[0] + h(v), label[1], label[2], v))

    if target not in closed:
        where = f" for leg {leg_index}" if leg_index is not None else ""
        raise NoRouteFound(f"No connected road path{where}", leg_index=leg_index)

    edges: List[int] = []
    n = target
    while n != source:
        ei = prev_edge[n]
        edges.append(ei)
        n = network.edge(ei).source
    edges.reverse()
    return tuple(edges)


def synthesize_direct(
    network: RoadNetwork,
    anchors: Sequence[int],
    deadline: Optional[Deadline] = None,
) -> ResolvedPath:
    legs: List[Leg] = []
    for i, (a, b) in enumerate(zip(anchors, anchors[1:])):
        if deadline is not None and deadline.expired():
            raise SynthesisTimeout(f"Deadline expired after {i} of {len(anchors) - 1} legs")
        legs.append(shortest_leg(network, a, b, leg_index=i))
    return ResolvedPath(anchors=tuple(anchors), legs=tuple(legs))


# --- target matching ---


def target_score(metrics: PathMetrics, targets: Targets, cfg: SearchConfig) -> float:
    s = 0.0
    if targets.distance_m is not None:
        s += cfg.weight_distance * abs(metrics.distance_m - targets.distance_m) / 1000.0
    if targets.elevation_gain_m is not None:
        s += cfg.weight_elevation * abs(metrics.gain_m - targets.elevation_gain_m)
    return s


def within_tolerance(metrics: PathMetrics, targets: Targets, cfg: SearchConfig) -> bool:
    if targets.distance_m is not None:
        if abs(metrics.distance_m - targets.distance_m) > cfg.distance_tolerance * targets.distance_m:
            return False
    if targets.elevation_gain_m is not None:
        if abs(metrics.gain_m - targets.elevation_gain_m) > cfg.elevation_tolerance * targets.elevation_gain_m:
            return False
    return True


class SearchStatus(str, Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    TIMED_OUT = "timed_out"
    STALLED = "stalled"


@dataclass
class SearchState:
    legs: List[Leg]
    leg_metrics: List[PathMetrics]
    metrics: PathMetrics
    score: float
    step: int = 0
    status: SearchStatus = SearchStatus.RUNNING


@dataclass(frozen=True)
class Candidate:
    leg_index: int
    leg: Leg
    metrics: PathMetrics
    score: float
    correction_m: float
    elevation_change_m: float
    order: int

    def sort_key(self) -> Tuple[float, float, float, int]:
        return (round(self.score, 9), -round(self.correction_m, 6), round(self.elevation_change_m, 6), self.order)


@dataclass
class TargetSearch:
    """
    One request's local search. Caches (neighbourhoods, alternates) live on the
    instance and are dropped with it.
    """

    network: RoadNetwork
    seed: ResolvedPath
    targets: Targets
    cfg: SearchConfig
    deadline: Optional[Deadline] = None
    _reach: Dict[Tuple[int, int], Dict[int, float]] = field(default_factory=dict)
    _alternates: Dict[Tuple[int, int], List[Leg]] = field(default_factory=dict)
    _back: Dict[Tuple[int, int], Optional[Leg]] = field(default_factory=dict)

    def run(self) -> ResolvedPath:
        leg_metrics = [edges_metrics(self.network, leg) for leg in self.seed.legs]
        metrics = sum(leg_metrics, PathMetrics())
        state = SearchState(
            legs=list(self.seed.legs),
            leg_metrics=leg_metrics,
            metrics=metrics,
            score=target_score(metrics, self.targets, self.cfg),
        )
        budget = (self.deadline or Deadline()).within(self.cfg.time_budget_s)

        while state.status is SearchStatus.RUNNING:
            if within_tolerance(state.metrics, self.targets, self.cfg):
                state.status = SearchStatus.CONVERGED
            elif state.step >= self.cfg.max_iterations:
                state.status = SearchStatus.EXHAUSTED
            elif budget.expired():
                state.status = SearchStatus.TIMED_OUT
            else:
                candidate = self._best_candidate(state)
                if candidate is None:
                    state.status = SearchStatus.STALLED
                else:
                    self._apply(state, candidate)

        logger.debug(
            "Target search %s after %d steps: %.0f m, %.0f m gain, score %.4f",
            state.status.value,
            state.step,
            state.metrics.distance_m,
            state.metrics.gain_m,
            state.score,
        )
        return ResolvedPath(
            anchors=self.seed.anchors,
            legs=tuple(state.legs),
            best_effort=state.status is not SearchStatus.CONVERGED,
            iterations=state.step,
        )

    def _apply(self, state: SearchState, c: Candidate) -> None:
        state.legs[c.leg_index] = c.leg
        # recompute exactly so incremental deltas never accumulate drift
        state.leg_metrics[c.leg_index] = edges_metrics(self.network, c.leg)
        state.metrics = sum(state.leg_metrics, PathMetrics())
        state.score = target_score(state.metrics, self.targets, self.cfg)
        state.step += 1

    def _best_candidate(self, state: SearchState) -> Optional[Candidate]:
        best: Optional[Candidate] = None
        seen: Set[Tuple[int, Leg]] = set()
        order = 0
        for leg_index, leg, delta in self._moves(state):
            key = (leg_index, leg)
            if key in seen or leg == state.legs[leg_index]:
                continue
            seen.add(key)
            metrics = state.metrics + delta
            score = target_score(metrics, self.targets, self.cfg)
            if score >= state.score - SCORE_EPS:
                continue
            correction = 0.0
            if self.targets.distance_m is not None:
                correction = abs(state.metrics.distance_m - self.targets.distance_m) - abs(
                    metrics.distance_m - self.targets.distance_m
                )
            vertical = abs((metrics.gain_m + metrics.loss_m) - (state.metrics.gain_m + state.metrics.loss_m))
            c = Candidate(leg_index, leg, metrics, score, correction, vertical, order)
            order += 1
            if best is None or c.sort_key() < best.sort_key():
                best = c
        return best

    def _moves(self, state: SearchState) -> Iterator[Tuple[int, Leg, PathMetrics]]:
        yield from self._detour_moves(state)
        yield from self._alternate_moves(state)

    # --- path positions ---

    def _leg_nodes(self, state: SearchState, leg_index: int) -> List[int]:
        nodes = [self.seed.anchors[leg_index]]
        for ei in state.legs[leg_index]:
            nodes.append(self.network.edge(ei).target)
        return nodes

    def _sample_positions(self, state: SearchState) -> List[Tuple[int, int, int]]:
        """(leg index, position within leg, node) spread evenly along the whole path."""
        positions: List[Tuple[int, int, int]] = []
        for i in range(len(state.legs)):
            nodes = self._leg_nodes(state, i)
            for p, n in enumerate(nodes):
                if i > 0 and p == 0:
                    continue  # same node as the previous leg's end
                positions.append((i, p, n))

        s = max(1, self.cfg.detour_anchor_samples)
        if len(positions) <= s:
            return positions
        if s == 1:
            return [positions[len(positions) // 2]]
        picked = []
        last = -1
        for k in range(s):
            idx = round(k * (len(positions) - 1) / (s - 1))
            if idx != last:
                picked.append(positions[idx])
                last = idx
        return picked

    # --- detour insertion ---

    def _reachable(self, node: int, cap_m: float) -> Dict[int, float]:
        bucket = int(math.ceil(cap_m / 250.0))
        key = (node, bucket)
        if key not in self._reach:
            self._reach[key] = nx.single_source_dijkstra_path_length(
                self.network.digraph, node, cutoff=bucket * 250.0, weight="length"
            )
        return self._reach[key]

    def _return_leg(self, source: int, target: int) -> Optional[Leg]:
        key = (source, target)
        if key not in self._back:
            try:
                self._back[key] = shortest_leg(self.network, source, target)
            except NoRouteFound:
                self._back[key] = None
        return self._back[key]

    def _detour_moves(self, state: SearchState) -> Iterator[Tuple[int, Leg, PathMetrics]]:
        distance_deficit = 0.0
        if self.targets.distance_m is not None:
            distance_deficit = self.targets.distance_m - state.metrics.distance_m
        elevation_deficit = 0.0
        if self.targets.elevation_gain_m is not None:
            elevation_deficit = self.targets.elevation_gain_m - state.metrics.gain_m
        if distance_deficit <= 0 and elevation_deficit <= 0:
            return

        if distance_deficit > 0:
            wanted = min(distance_deficit / 2.0, self.cfg.detour_max_radius_m)
            cap = min(self.cfg.detour_max_radius_m, wanted * 1.25 + 50.0)
        else:
            wanted = 0.0
            cap = self.cfg.detour_max_radius_m / 2.0

        used: Set[int] = set()
        for i in range(len(state.legs)):
            used.update(self._leg_nodes(state, i))

        for leg_index, pos, u in self._sample_positions(state):
            reach = self._reachable(u, cap)
            u_ele = self.network.node(u).elevation_m
            options = [(w, d) for w, d in reach.items() if w not in used and 0 < d <= cap]
            if not options:
                continue

            if distance_deficit > 0:
                options.sort(key=lambda o: (abs(o[1] - wanted), -(self.network.node(o[0]).elevation_m - u_ele), o[0]))
            else:
                options.sort(key=lambda o: (-(self.network.node(o[0]).elevation_m - u_ele), o[1], o[0]))

            picked: List[int] = []
            for w, _ in options:
                if len(picked) >= self.cfg.detour_candidates_per_anchor:
                    break
                picked.append(w)
            if distance_deficit > 0 and elevation_deficit > 0:
                highest = max(options, key=lambda o: (self.network.node(o[0]).elevation_m, -o[0]))[0]
                if highest not in picked:
                    picked.append(highest)

            for w in picked:
                out = self._return_leg(u, w)
                back = self._return_leg(w, u)
                if not out or not back:
                    continue
                detour = out + back
                if self._mean_suitability(detour) < self.cfg.detour_min_suitability:
                    continue
                leg = state.legs[leg_index]
                new_leg = leg[:pos] + detour + leg[pos:]
                yield leg_index, new_leg, edges_metrics(self.network, detour)

    def _mean_suitability(self, edges: Leg) -> float:
        if not edges:
            return 0.0
        total = sum(self.network.edge(e).length_m for e in edges)
        if total <= 0:
            return 1.0
        return sum(self.network.edge(e).suitability * self.network.edge(e).length_m for e in edges) / total

    # --- leg alternates ---

    def _alternates_between(self, a: int, b: int) -> List[Leg]:
        key = (a, b)
        if key not in self._alternates:
            paths: List[Leg] = []
            try:
                for node_path in islice(
                    nx.shortest_simple_paths(self.network.digraph, a, b, weight="length"),
                    self.cfg.alternate_paths_k,
                ):
                    paths.append(self.network.edges_for_node_path(node_path))
            except (nx.NetworkXNoPath, nx.NodeNotFound):
                pass
            self._alternates[key] = paths
        return self._alternates[key]

    def _alternate_moves(self, state: SearchState) -> Iterator[Tuple[int, Leg, PathMetrics]]:
        window = max(1, self.cfg.alternate_max_leg_edges)
        for leg_index, leg in enumerate(state.legs):
            if not leg:
                continue
            if len(leg) <= window:
                p, q = 0, len(leg)
            else:
                p = (len(leg) - window) // 2
                q = p + window
            nodes = self._leg_nodes(state, leg_index)
            a, b = nodes[p], nodes[q]
            if a == b:
                continue
            removed = edges_metrics(self.network, leg[p:q])
            for alt in self._alternates_between(a, b):
                new_leg = leg[:p] + alt + leg[q:]
                yield leg_index, new_leg, edges_metrics(self.network, alt) - removed


def synthesize(
    network: RoadNetwork,
    anchors: Sequence[int],
    targets: Optional[Targets],
    cfg: SearchConfig,
    deadline: Optional[Deadline] = None,
) -> ResolvedPath:
    seed = synthesize_direct(network, anchors, deadline)
    if targets is None or not targets.active:
        return seed
    return TargetSearch(network, seed, targets, cfg, deadline).run()
