"""
Geometry post-processing for accepted masks.

- Area: geodesic area on the WGS84 ellipsoid, rounded to whole m², then
  converted to km² with 5 decimals
- Clipping: optional buffer + intersection with the world bounds to repair
  slivers and out-of-range outlines
- Rounding: optional fixed coordinate precision
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pyproj import Geod
from shapely.errors import GEOSException
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from .config import HarvestConfig

logger = logging.getLogger(__name__)

AREA_DECIMALS = 5
M2_PER_KM2 = 1_000_000

WORLD = box(-180, -90, 180, 90)

_GEOD = Geod(ellps="WGS84")


@dataclass
class ProcessedGeometry:
    """Geometry ready for emission, with its area in km²"""
    geometry: Optional[Dict[str, Any]]
    area: Optional[float]


def geodesic_area_m2(geometry: Dict[str, Any]) -> float:
    """Unsigned area in m² of a GeoJSON Polygon / MultiPolygon"""
    geom = shape(geometry)
    parts = geom.geoms if geom.geom_type == "MultiPolygon" else [geom]
    total = 0.0
    for part in parts:
        # Counter-clockwise exterior, clockwise holes: holes are subtracted
        area, _ = _GEOD.geometry_area_perimeter(orient(part, sign=1.0))
        total += abs(area)
    return total


def area_km2(geometry: Dict[str, Any]) -> float:
    """Area in km²: whole square metres first, then 5 decimal km²"""
    square_metres = round(geodesic_area_m2(geometry))
    return round(square_metres / M2_PER_KM2, AREA_DECIMALS)


def clip_to_world(geometry: Dict[str, Any], tolerance: float = 1e-9) -> Optional[Dict[str, Any]]:
    """
    Buffer by tolerance and intersect with the world bounds.

    Returns:
        Clipped Polygon / MultiPolygon, or None if the operation fails or
        leaves nothing
    """
    try:
        geom = shape(geometry).buffer(tolerance)
        clipped: BaseGeometry = geom.intersection(WORLD)
    except (GEOSException, ValueError, TypeError) as e:
        logger.warning(f"Clipping failed: {e}")
        return None

    if clipped.is_empty or clipped.geom_type not in ("Polygon", "MultiPolygon"):
        logger.warning(f"Clipping left no polygon ({clipped.geom_type})")
        return None

    return _as_lists(mapping(clipped))


def _as_lists(value: Any) -> Any:
    """shapely.mapping returns tuples; GeoJSON output uses lists"""
    if isinstance(value, dict):
        return {k: _as_lists(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_lists(v) for v in value]
    return value


def close_rings(geometry: Dict[str, Any]) -> Dict[str, Any]:
    """Repeat the first position at the end of every ring that lacks it"""
    def _close(ring):
        ring = [list(p) for p in ring]
        if ring and ring[0] != ring[-1]:
            ring.append(list(ring[0]))
        return ring

    coordinates = geometry.get("coordinates") or []
    if geometry.get("type") == "MultiPolygon":
        coordinates = [[_close(r) for r in polygon] for polygon in coordinates]
    else:
        coordinates = [_close(r) for r in coordinates]
    return {**geometry, "coordinates": coordinates}


def round_coordinates(geometry: Dict[str, Any], precision: int) -> Dict[str, Any]:
    def _round(value):
        if isinstance(value, (list, tuple)):
            return [_round(v) for v in value]
        return round(value, precision)

    return {**geometry, "coordinates": _round(geometry["coordinates"])}


def process_geometry(geometry: Optional[Dict[str, Any]], config: HarvestConfig) -> ProcessedGeometry:
    """
    Post-process an accepted mask geometry.

    Area is measured on the geometry as emitted (after clipping and
    rounding) so the two always agree.
    """
    if geometry is None:
        return ProcessedGeometry(geometry=None, area=None)

    geometry = close_rings(geometry)

    if config.clip_to_world:
        geometry = clip_to_world(geometry, config.clip_tolerance)
        if geometry is None:
            return ProcessedGeometry(geometry=None, area=None)

    if config.coordinate_precision is not None:
        geometry = round_coordinates(geometry, config.coordinate_precision)

    return ProcessedGeometry(geometry=geometry, area=area_km2(geometry))
