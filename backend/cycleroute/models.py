from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import List, Optional

class Location(BaseModel):
    lat: float
    lon: float

class RoutePreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_distance_km: Optional[float] = None
    target_elevation_gain_m: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("target_elevation_gain_m", "target_elevation_m"),
    )

class RouteRequest(BaseModel):
    start_point: Location
    end_point: Location
    waypoints: List[Location] = Field(default_factory=list)
    preferences: Optional[RoutePreferences] = None

class Stop(BaseModel):
    name: str
    type: str
    rating: float
    location: Location

class RouteSummary(BaseModel):
    total_distance_m: float
    total_elevation_gain_m: float
    estimated_moving_time_s: float

class RouteResponse(BaseModel):
    summary: RouteSummary
    geometry: str
    stops: List[Stop] = Field(default_factory=list)
