from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"


@dataclass(frozen=True)
class RouteLimits:
    max_waypoints: int = 15
    max_target_distance_km: float = 200.0
    max_target_elevation_gain_m: float = 3000.0


@dataclass(frozen=True)
class SearchConfig:
    distance_tolerance: float = 0.10
    elevation_tolerance: float = 0.15
    weight_distance: float = 1.0  # per km of error
    weight_elevation: float = 0.01  # per m of error
    max_iterations: int = 60
    time_budget_s: float = 2.0
    detour_anchor_samples: int = 8
    detour_candidates_per_anchor: int = 3
    detour_max_radius_m: float = 5000.0
    detour_min_suitability: float = 0.3
    alternate_paths_k: int = 4
    alternate_max_leg_edges: int = 120


@dataclass(frozen=True)
class AssemblyConfig:
    average_speed_kmh: float = 18.0
    polyline_precision: int = 5


@dataclass(frozen=True)
class StopsConfig:
    corridor_half_width_m: float = 500.0
    max_stops: int = 10
    dedupe_tolerance_m: float = 5.0


class Settings(BaseSettings):
    # data sources
    road_network_path: Path = DATA_DIR / "road_network.json"
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    overpass_bbox: Optional[str] = None  # "south,west,north,east"
    spots_csv_path: Path = DATA_DIR / "spots.csv"
    elevation_tile_url: Optional[str] = None
    elevation_timeout_s: float = 5.0

    # validation limits
    max_waypoints: int = 15
    max_target_distance_km: float = 200.0
    max_target_elevation_gain_m: float = 3000.0

    # routing
    snap_radius_m: float = 300.0
    average_speed_kmh: float = 18.0
    distance_tolerance: float = 0.10
    elevation_tolerance: float = 0.15
    score_weight_distance: float = 1.0
    score_weight_elevation: float = 0.01
    search_max_iterations: int = 60
    search_time_budget_s: float = 2.0
    detour_anchor_samples: int = 8
    detour_candidates_per_anchor: int = 3
    detour_max_radius_m: float = 5000.0
    detour_min_suitability: float = 0.3
    alternate_paths_k: int = 4
    alternate_max_leg_edges: int = 120

    # stops
    corridor_half_width_m: float = 500.0
    max_stops: int = 10
    stop_dedupe_tolerance_m: float = 5.0

    # serving
    max_concurrent_syntheses: int = 8
    queue_timeout_s: float = 10.0  # waits up to a full request timeout before 429
    request_timeout_s: float = 10.0
    allow_origins: List[str] = ["*"]
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def route_limits(self) -> RouteLimits:
        return RouteLimits(
            max_waypoints=self.max_waypoints,
            max_target_distance_km=self.max_target_distance_km,
            max_target_elevation_gain_m=self.max_target_elevation_gain_m,
        )

    def search_config(self) -> SearchConfig:
        return SearchConfig(
            distance_tolerance=self.distance_tolerance,
            elevation_tolerance=self.elevation_tolerance,
            weight_distance=self.score_weight_distance,
            weight_elevation=self.score_weight_elevation,
            max_iterations=self.search_max_iterations,
            time_budget_s=self.search_time_budget_s,
            detour_anchor_samples=self.detour_anchor_samples,
            detour_candidates_per_anchor=self.detour_candidates_per_anchor,
            detour_max_radius_m=self.detour_max_radius_m,
            detour_min_suitability=self.detour_min_suitability,
            alternate_paths_k=self.alternate_paths_k,
            alternate_max_leg_edges=self.alternate_max_leg_edges,
        )

    def assembly_config(self) -> AssemblyConfig:
        return AssemblyConfig(average_speed_kmh=self.average_speed_kmh)

    def stops_config(self) -> StopsConfig:
        return StopsConfig(
            corridor_half_width_m=self.corridor_half_width_m,
            max_stops=self.max_stops,
            dedupe_tolerance_m=self.stop_dedupe_tolerance_m,
        )


settings = Settings()
