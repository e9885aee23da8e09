# fieldmap/utils/geo.py
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from shapely.errors import GEOSException
from shapely.geometry import Polygon

logger = logging.getLogger(__name__)

@dataclass
class BBox:
    west: float
    south: float
    east: float
    north: float

    def envelope(self) -> str:
        """xmin,ymin,xmax,ymax string for ``esriGeometryEnvelope`` queries."""
        return f"{self.west},{self.south},{self.east},{self.north}"

    def contains(self, lon: float, lat: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north


# Tight bounds of the preserve boundary
PRESERVE_EXTENT = BBox(west=-120.498, south=34.415, east=-120.357, north=34.570)
# ~10 km beyond the boundary for regional context
EXPANDED_EXTENT = BBox(west=-120.55, south=34.35, east=-120.30, north=34.62)


def extent_for(mode: str) -> BBox:
    return PRESERVE_EXTENT if mode == "preserve-only" else EXPANDED_EXTENT


def polygon_json(ring: list[list[float]], wkid: int = 4326) -> str:
    return json.dumps({"rings": [[[c[0], c[1]] for c in ring]], "spatialReference": {"wkid": wkid}})


def simplify_polygon(ring: list[list[float]], tolerance: float = 0.001) -> list[list[float]]:
    """Douglas-Peucker with topology kept, so the result is still a valid ring."""
    simplified = Polygon(ring).simplify(tolerance, preserve_topology=True)
    out = [list(c) for c in simplified.exterior.coords]
    logger.info("Simplified boundary: %d -> %d vertices", len(ring), len(out))
    return out


def preserve_boundary_geometry(path: str | None) -> tuple[str, str]:
    """
    Returns (geometry, geometryType) for the preserve-only spatial filter.
    Uses the boundary GeoJSON when available, otherwise the preserve envelope.
    """
    if path:
        try:
            gj = json.loads(Path(path).read_text(encoding="utf-8"))
            ring = gj["features"][0]["geometry"]["coordinates"][0]
            if len(ring) > 1000:
                ring = simplify_polygon(ring, 0.0005)  # ~50 m
            return polygon_json(ring), "esriGeometryPolygon"
        except (OSError, ValueError, KeyError, IndexError, GEOSException) as ex:
            logger.warning("Preserve boundary unavailable (%s), using envelope", ex)
    return PRESERVE_EXTENT.envelope(), "esriGeometryEnvelope"
