from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple
import math

from pyproj import Geod, Transformer

EARTH_RADIUS_M = 6371008.8

GEOD = Geod(ellps="WGS84")


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance on the mean-radius sphere."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def geodesic_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Ellipsoidal (WGS84) distance; used for edge lengths."""
    _, _, dist = GEOD.inv(lon1, lat1, lon2, lat2)
    return float(dist)


@dataclass
class LocalProjection:
    """
    Azimuthal equidistant projection centred on (lat0, lon0).
    Distances measured in projected metres are accurate near the centre,
    which is what corridor buffering needs.
    """

    tf: Transformer
    tf_inv: Transformer

    @classmethod
    def around(cls, lat0: float, lon0: float) -> "LocalProjection":
        crs = f"+proj=aeqd +lat_0={lat0} +lon_0={lon0} +datum=WGS84 +units=m +no_defs"
        return cls(
            tf=Transformer.from_crs("EPSG:4326", crs, always_xy=True),
            tf_inv=Transformer.from_crs(crs, "EPSG:4326", always_xy=True),
        )

    def to_xy(self, lat: float, lon: float) -> Tuple[float, float]:
        x, y = self.tf.transform(float(lon), float(lat))
        return float(x), float(y)
