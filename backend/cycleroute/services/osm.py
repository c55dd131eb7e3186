from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
import json
import logging

import requests

from cycleroute.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass-api.de/api/interpreter"

BBox = Tuple[float, float, float, float]  # south, west, north, east


@dataclass
class OSMBundle:
    raw: Dict[str, Any]


def parse_bbox(text: str) -> BBox:
    parts = [float(p) for p in text.split(",")]
    if len(parts) != 4:
        raise ValueError(f"Expected 'south,west,north,east', got {text!r}")
    south, west, north, east = parts
    if south >= north or west >= east:
        raise ValueError(f"Degenerate bounding box {text!r}")
    return south, west, north, east


def fetch_osm(
    bbox: BBox,
    overpass_url: str = OVERPASS_URL,
    timeout_s: int = 120,
) -> OSMBundle:
    """
    Fetch every highway way (plus its nodes) inside a bounding box from the Overpass API.
    Returns raw elements suitable for road network construction.
    """
    south, west, north, east = bbox
    query = f"""
    [out:json][timeout:{int(timeout_s)}];
    (
      way["highway"]({south},{west},{north},{east});
      >;
    );
    out body;
    """

    try:
        resp = requests.post(
            overpass_url,
            data=query.encode("utf-8"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout_s + 30,
        )
    except requests.RequestException as e:
        raise ProviderUnavailable("overpass", f"request failed: {e}") from e

    if resp.status_code != 200:
        raise ProviderUnavailable(
            "overpass", f"Overpass API error {resp.status_code}: {resp.text[:200]}"
        )

    try:
        data = resp.json()
    except ValueError as e:
        raise ProviderUnavailable("overpass", f"Overpass returned invalid JSON: {e}") from e

    if not isinstance(data, dict) or "elements" not in data:
        raise ProviderUnavailable("overpass", "Invalid Overpass response (no elements)")

    logger.info("Fetched %d OSM elements for bbox %s", len(data["elements"]), bbox)
    return OSMBundle(raw=data)


def load_osm_file(path: Path) -> OSMBundle:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ProviderUnavailable("road_network", f"cannot read {path}: {e}") from e

    if not isinstance(data, dict) or "elements" not in data:
        raise ProviderUnavailable("road_network", f"{path} is not an Overpass JSON payload")
    return OSMBundle(raw=data)


def load_or_fetch_osm(
    path: Path,
    bbox_text: Optional[str],
    overpass_url: str = OVERPASS_URL,
) -> OSMBundle:
    """
    Prefer the local extract; fall back to Overpass when a bbox is configured,
    writing the downloaded payload next to where the extract was expected.
    """
    if path.exists():
        return load_osm_file(path)
    if not bbox_text:
        raise ProviderUnavailable("road_network", f"{path} not found and no overpass_bbox configured")

    bundle = fetch_osm(parse_bbox(bbox_text), overpass_url=overpass_url)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(bundle.raw, f)
    except OSError as e:
        logger.warning("Could not cache Overpass extract at %s: %s", path, e)
    return bundle
