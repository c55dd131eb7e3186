from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional
import csv
import logging

from shapely import STRtree
from shapely.geometry import Point, Polygon

from cycleroute.errors import ProviderUnavailable
from cycleroute.services.providers import POIProvider, Spot, StopType

logger = logging.getLogger(__name__)


class SpotIndex(POIProvider):
    """In-memory spots with an STRtree over their (lon, lat) points."""

    def __init__(self, spots: Iterable[Spot]):
        self._spots = tuple(spots)
        self._tree = STRtree([Point(s.lon, s.lat) for s in self._spots])

    def __len__(self) -> int:
        return len(self._spots)

    def query(self, corridor: Polygon) -> List[Spot]:
        if not self._spots or corridor.is_empty:
            return []
        hits = self._tree.query(corridor, predicate="intersects")
        return [self._spots[int(i)] for i in sorted(int(i) for i in hits)]


def _parse_row(parts: List[str]) -> Optional[Spot]:
    if len(parts) < 5:
        return None
    name, type_, lat, lon, rating = (p.strip() for p in parts[:5])
    try:
        stop_type = StopType(type_.lower())
    except ValueError:
        return None
    try:
        lat_f = float(lat)
        lon_f = float(lon)
        rating_f = float(rating)
    except ValueError:
        return None
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0):
        return None
    return Spot(name=name, type=stop_type, rating=min(5.0, max(0.0, rating_f)), lat=lat_f, lon=lon_f)


def load_spots_csv(path: Path) -> SpotIndex:
    """
    Rows are `name,type,lat,lon,rating`. Lines starting with '#' and a header row
    are ignored; malformed rows and unknown types are skipped with a log line.
    """
    spots: List[Spot] = []
    skipped = 0
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            for lineno, parts in enumerate(csv.reader(f), start=1):
                if not parts or not "".join(parts).strip() or parts[0].lstrip().startswith("#"):
                    continue
                if lineno == 1 and parts[0].strip().lower() == "name":
                    continue
                spot = _parse_row(parts)
                if spot is None:
                    skipped += 1
                    logger.debug("Skipping spot row %d in %s: %r", lineno, path, parts)
                    continue
                spots.append(spot)
    except OSError as e:
        raise ProviderUnavailable("spots", f"cannot read {path}: {e}") from e

    logger.info("Loaded %d spots from %s (%d rows skipped)", len(spots), path, skipped)
    return SpotIndex(spots)
