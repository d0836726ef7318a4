"""
Map Validation Rules

VALIDATION CHECKS (each evaluated independently, all violations reported):
1. missing_uuid: map has no NYPL UUID
2. mask_coordinates_count: mask outline has fewer than 4 coordinates
3. self_intersection: mask ring edges cross each other
4. invalid_coordinates: lon outside -180..180 or lat outside -90..90
5. multipolygon: mask is not exactly one polygon
6. mask_to_geojson: mask could not be converted
7. warped_but_unmasked: georeferenced map without a mask
8. unwarped_but_masked: masked map that is not georeferenced
9. mask_missing: nothing else wrong, but there is no mask either

A map with any diagnostic is logged instead of emitted.
"""

import math
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple

from shapely import STRtree
from shapely.geometry import LineString, Point

from .config import WARPED_STATUSES, HarvestConfig
from .geometry import close_rings
from .models import Diagnostic, DiagnosticKind, MapRecord, MaskStatus

MIN_COORDINATES = 4

Coordinate = Sequence[float]
Ring = Sequence[Coordinate]


def is_admissible(record: MapRecord) -> bool:
    """Only real maps with a bounding box reach validation"""
    return bool(record.bbox) and record.map_type == "is_map"


def polygons(geometry: Optional[Dict[str, Any]]) -> List[List[Ring]]:
    """Polygon ring-sets of a Polygon / MultiPolygon GeoJSON geometry"""
    if not geometry:
        return []
    coordinates = geometry.get("coordinates") or []
    if geometry.get("type") == "Polygon":
        return [coordinates] if coordinates else []
    if geometry.get("type") == "MultiPolygon":
        return [p for p in coordinates if p]
    return []


def coord_all(coordinates: Any) -> Iterator[Coordinate]:
    """Every position in a (nested) GeoJSON coordinates array"""
    if not isinstance(coordinates, (list, tuple)) or not coordinates:
        return
    if not isinstance(coordinates[0], (list, tuple)):
        yield coordinates
        return
    for child in coordinates:
        yield from coord_all(child)


def coordinate_valid(coord: Coordinate) -> bool:
    try:
        lon, lat = float(coord[0]), float(coord[1])
    except (IndexError, TypeError, ValueError):
        return False
    if math.isnan(lon) or math.isnan(lat):
        return False
    return -180 <= lon <= 180 and -90 <= lat <= 90


def segment_intersection(
    a1: Coordinate, a2: Coordinate, b1: Coordinate, b2: Coordinate
) -> Optional[Tuple[float, float]]:
    """
    Intersection point of segments a1-a2 and b1-b2, endpoints included.

    Parallel and collinear segments report no intersection.
    """
    return _crossing(LineString([a1[:2], a2[:2]]), LineString([b1[:2], b2[:2]]))


def _crossing(a: LineString, b: LineString) -> Optional[Tuple[float, float]]:
    # Collinear overlaps come back as lines, not points
    shared = a.intersection(b)
    if isinstance(shared, Point) and not shared.is_empty:
        return (shared.x, shared.y)
    return None


def find_kinks(rings: Iterable[Ring]) -> List[Tuple[float, float]]:
    """
    Self-intersection points across all rings.

    Every pair of edges is tested except an edge with itself and edges
    sharing a vertex within the same ring (including first/last edge of a
    closed ring). Candidate pairs come from an STRtree over all edges.
    """
    edges: List[LineString] = []
    owners: List[Tuple[int, int, int, bool]] = []
    for r, ring in enumerate(r for r in rings if len(r) >= 2):
        ring = [tuple(p[:2]) for p in ring]
        closed = ring[0] == ring[-1]
        for i in range(len(ring) - 1):
            edges.append(LineString([ring[i], ring[i + 1]]))
            owners.append((r, i, len(ring) - 1, closed))
    if not edges:
        return []

    left, right = STRtree(edges).query(edges, predicate="intersects")
    kinks: List[Tuple[float, float]] = []
    for a, b in sorted(zip(left.tolist(), right.tolist())):
        if a >= b:
            continue
        ring_a, i, n, closed = owners[a]
        ring_b, k, _, _ = owners[b]
        if ring_a == ring_b and (k == i + 1 or (closed and i == 0 and k == n - 1)):
            continue
        point = _crossing(edges[a], edges[b])
        if point is not None and point not in kinks:
            kinks.append(point)
    return kinks


# =============================================================================
# Rules
# =============================================================================

Rule = Callable[[MapRecord, "Validator"], Optional[Diagnostic]]


def check_uuid(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if not record.uuid:
        return Diagnostic(DiagnosticKind.MISSING_UUID, "Map has no UUID")
    return None


def check_coordinates_count(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if record.mask_geometry is None:
        return None
    rings = polygons(record.mask_geometry)
    count = len(rings[0][0]) if rings and rings[0] else 0
    if count < MIN_COORDINATES:
        return Diagnostic(
            DiagnosticKind.MASK_COORDINATES_COUNT,
            f"Mask has {count} coordinates (should have at least {MIN_COORDINATES})",
        )
    return None


def check_self_intersection(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if not polygons(record.mask_geometry):
        return None
    closed = close_rings(record.mask_geometry)
    kinks = find_kinks(ring for rings in polygons(closed) for ring in rings)
    if kinks:
        return Diagnostic(
            DiagnosticKind.SELF_INTERSECTION,
            f"Mask has {len(kinks)} self-intersections",
        )
    return None


def check_coordinates(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if record.mask_geometry is None:
        return None
    coordinates = record.mask_geometry.get("coordinates")
    if not all(coordinate_valid(c) for c in coord_all(coordinates)):
        return Diagnostic(DiagnosticKind.INVALID_COORDINATES, "Mask has invalid coordinates")
    return None


def check_multipolygon(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if record.mask_geometry is None:
        return None
    count = len(polygons(record.mask_geometry))
    if count != 1:
        return Diagnostic(
            DiagnosticKind.MULTIPOLYGON,
            f"Mask is a MultiPolygon with {count} polygons",
        )
    return None


def check_mask_error(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if record.mask_error:
        return Diagnostic(DiagnosticKind.MASK_TO_GEOJSON, record.mask_error)
    return None


def check_warped_but_unmasked(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if record.status == "warped" and record.mask_status == MaskStatus.UNMASKED.value:
        return Diagnostic(DiagnosticKind.WARPED_BUT_UNMASKED, "Map is warped, but not masked")
    return None


def check_unwarped_but_masked(record: MapRecord, validator: "Validator") -> Optional[Diagnostic]:
    if (record.status not in validator.warped_statuses
            and record.mask_status != MaskStatus.UNMASKED.value):
        return Diagnostic(DiagnosticKind.UNWARPED_BUT_MASKED, "Map is masked, but not warped")
    return None


RULES: Dict[DiagnosticKind, Rule] = {
    DiagnosticKind.MISSING_UUID: check_uuid,
    DiagnosticKind.MASK_COORDINATES_COUNT: check_coordinates_count,
    DiagnosticKind.SELF_INTERSECTION: check_self_intersection,
    DiagnosticKind.INVALID_COORDINATES: check_coordinates,
    DiagnosticKind.MULTIPOLYGON: check_multipolygon,
    DiagnosticKind.MASK_TO_GEOJSON: check_mask_error,
    DiagnosticKind.WARPED_BUT_UNMASKED: check_warped_but_unmasked,
    DiagnosticKind.UNWARPED_BUT_MASKED: check_unwarped_but_masked,
}


class Validator:
    """
    Rule engine over MapRecords.

    Pure: the same record always yields the same diagnostics, in rule order.
    """

    def __init__(
        self,
        warped_statuses: FrozenSet[str] = WARPED_STATUSES,
        disabled_rules: Iterable[str] = (),
    ):
        disabled = {DiagnosticKind(rule) for rule in disabled_rules}
        self.warped_statuses = frozenset(warped_statuses)
        self.rules = [(kind, rule) for kind, rule in RULES.items() if kind not in disabled]
        self.check_missing_mask = DiagnosticKind.MASK_MISSING not in disabled

    @classmethod
    def from_config(cls, config: HarvestConfig) -> "Validator":
        return cls(warped_statuses=config.warped_statuses, disabled_rules=config.disabled_rules)

    def validate(self, record: MapRecord) -> List[Diagnostic]:
        diagnostics = []
        for _, rule in self.rules:
            diagnostic = rule(record, self)
            if diagnostic is not None:
                diagnostics.append(diagnostic)

        if self.check_missing_mask and not diagnostics:
            geometry = record.mask_geometry
            if not (geometry and geometry.get("coordinates")):
                diagnostics.append(Diagnostic(DiagnosticKind.MASK_MISSING, "Map is unmasked"))

        return diagnostics


def validate(record: MapRecord, validator: Optional[Validator] = None) -> List[Diagnostic]:
    """Validate with the default rule set unless a Validator is given"""
    return (validator or Validator()).validate(record)
