"""
Capability interfaces for the two process-wide data sources.

Both are loaded once at startup and only read afterwards, so implementations
must never mutate themselves after construction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple

from shapely.geometry import Polygon

from cycleroute.services.geo import Coordinate


@dataclass(frozen=True)
class GraphNode:
    index: int
    lat: float
    lon: float
    elevation_m: float = 0.0
    osm_id: int = 0


@dataclass(frozen=True)
class GraphEdge:
    index: int
    source: int
    target: int
    length_m: float
    elevation_delta_m: float
    suitability: float  # (0, 1], higher is nicer to ride
    way_id: int = 0
    name: str = ""


class StopType(str, Enum):
    CAFE = "cafe"
    VIEWPOINT = "viewpoint"
    CONVENIENCE = "convenience"
    LANDMARK = "landmark"


@dataclass(frozen=True)
class Spot:
    name: str
    type: StopType
    rating: float
    lat: float
    lon: float


class RoadNetworkProvider(ABC):
    @abstractmethod
    def nearest_node(self, location: Coordinate) -> GraphNode:
        """Snap a free coordinate to the closest routable node within the snap radius or raise Unroutable."""

    @abstractmethod
    def neighbors(self, node: GraphNode) -> Sequence[Tuple[GraphEdge, GraphNode]]:
        """Outgoing edges of `node` paired with the node each one leads to."""

    @abstractmethod
    def node(self, index: int) -> GraphNode:
        ...

    @abstractmethod
    def edge(self, index: int) -> GraphEdge:
        ...

    @property
    @abstractmethod
    def node_count(self) -> int:
        ...

    @property
    @abstractmethod
    def edge_count(self) -> int:
        ...


class POIProvider(ABC):
    @abstractmethod
    def query(self, corridor: Polygon) -> List[Spot]:
        """Return every spot inside the WGS84 (lon, lat) corridor polygon."""

    def __len__(self) -> int:
        return 0
