from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from cycleroute.services.providers import GraphEdge


@dataclass(frozen=True)
class ElevationProfile:
    gain_m: float
    loss_m: float


def elevation_gain(edges: Sequence[GraphEdge]) -> float:
    """Sum of the ascending parts of each edge; descents contribute nothing."""
    return float(sum(e.elevation_delta_m for e in edges if e.elevation_delta_m > 0))


def elevation_loss(edges: Sequence[GraphEdge]) -> float:
    return float(sum(-e.elevation_delta_m for e in edges if e.elevation_delta_m < 0))


def reverse_path(edges: Sequence[GraphEdge]) -> List[GraphEdge]:
    """
    The same physical path ridden the other way: edge order is reversed,
    endpoints swapped and every elevation delta negated.
    """
    return [
        GraphEdge(
            index=e.index,
            source=e.target,
            target=e.source,
            length_m=e.length_m,
            elevation_delta_m=-e.elevation_delta_m,
            suitability=e.suitability,
            way_id=e.way_id,
            name=e.name,
        )
        for e in reversed(edges)
    ]


def build_profile(edges: Sequence[GraphEdge]) -> ElevationProfile:
    return ElevationProfile(gain_m=elevation_gain(edges), loss_m=elevation_loss(edges))
