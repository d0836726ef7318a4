"""
Map Warper Harvest Data Model

Records flowing through the two pipeline stages:

- CatalogPage: one page of the catalog API
- PageError: a page that could not be fetched (recorded, not raised)
- MapRecord: immutable view of one catalog map, threaded through mask
  resolution and validation as value transformations
- Diagnostic / LogRecord: validation outcome for a rejected map
- DomainObject / RelationRecord: normalized output for an accepted map
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class MaskStatus(str, Enum):
    UNMASKED = "unmasked"
    MASKING = "masking"
    MASKED = "masked"


class DiagnosticKind(str, Enum):
    MISSING_UUID = "missing_uuid"
    MASK_COORDINATES_COUNT = "mask_coordinates_count"
    SELF_INTERSECTION = "self_intersection"
    INVALID_COORDINATES = "invalid_coordinates"
    MULTIPOLYGON = "multipolygon"
    MASK_TO_GEOJSON = "mask_to_geojson"
    WARPED_BUT_UNMASKED = "warped_but_unmasked"
    UNWARPED_BUT_MASKED = "unwarped_but_masked"
    MASK_MISSING = "mask_missing"
    # Only with keep_ungeometried_objects disabled
    GEOMETRY_UNUSABLE = "geometry_unusable"


class EmissionType(str, Enum):
    OBJECT = "object"
    RELATION = "relation"
    LOG = "log"


OBJECT_TYPE = "st:Map"
RELATION_TYPE = "st:in"


def drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop absent values so they are omitted from NDJSON output"""
    return {k: v for k, v in values.items() if v is not None}


def layer_object_id(layer_id: Any) -> str:
    """Layer ids share the map id space downstream, so they get a prefix"""
    return f"layer-{layer_id}"


@dataclass
class CatalogPage:
    """One page of catalog items"""
    page: int
    per_page: int
    items: List[Dict[str, Any]]
    url: str = ""

    @property
    def has_more(self) -> bool:
        return len(self.items) == self.per_page


@dataclass
class PageError:
    """A catalog page that failed after all retries"""
    error: str
    url: str
    page_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "url": self.url, "pageIndex": self.page_index}


# Catalog keys copied onto MapRecord attributes
_CATALOG_KEYS = (
    "id", "title", "description", "bbox", "map_type", "status", "mask_status",
    "depicts_year", "issue_year", "uuid", "parent_uuid", "nypl_digital_id",
    "transform_options", "width", "height",
)

# Keys added by the harvester itself (camelCase, as written to maps.ndjson)
_HARVEST_KEYS = {
    "child_uuids": "childUuids",
    "layer_ids": "layerIds",
    "layer_errors": "layerErrors",
    "mask_geometry": "maskGeometry",
    "gcps": "gcps",
    "mask_error": "maskError",
}


@dataclass(frozen=True)
class MapRecord:
    """
    One catalog map.

    Never mutated: mask resolution and layer lookups return new records via
    with_mask / with_mask_error / with_layers.
    """
    id: Any
    title: Optional[str] = None
    description: Optional[str] = None
    bbox: Optional[str] = None
    map_type: Optional[str] = None
    status: Optional[str] = None
    mask_status: Optional[str] = None
    depicts_year: Optional[Any] = None
    issue_year: Optional[Any] = None
    uuid: Optional[str] = None
    parent_uuid: Optional[str] = None
    child_uuids: Optional[Tuple[str, ...]] = None
    nypl_digital_id: Optional[str] = None
    transform_options: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    # Layer membership (only with include_map_layers)
    layer_ids: Optional[Tuple[Any, ...]] = None
    layer_errors: Optional[Tuple[Dict[str, Any], ...]] = None

    # Mask resolution outcome: geometry + gcps, or an error, never both
    mask_geometry: Optional[Dict[str, Any]] = None
    gcps: Optional[List[Dict[str, Any]]] = None
    mask_error: Optional[str] = None

    # Catalog keys we do not interpret, kept for the intermediate files
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if self.mask_geometry is not None and self.mask_error is not None:
            raise ValueError(f"Map {self.id} has both a mask geometry and a mask error")

    @property
    def mask_requested(self) -> bool:
        return self.mask_status in (MaskStatus.MASKED.value, MaskStatus.MASKING.value)

    @property
    def mask_resolved(self) -> bool:
        return self.mask_geometry is not None or self.mask_error is not None

    def with_mask(self, geometry: Dict[str, Any], gcps: List[Dict[str, Any]]) -> "MapRecord":
        return replace(self, mask_geometry=geometry, gcps=gcps, mask_error=None)

    def with_mask_error(self, message: str) -> "MapRecord":
        return replace(self, mask_geometry=None, gcps=None, mask_error=message)

    def with_layers(self, layer_ids: List[Any], layer_errors: List[Dict[str, Any]]) -> "MapRecord":
        return replace(self, layer_ids=tuple(layer_ids), layer_errors=tuple(layer_errors))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MapRecord":
        if "id" not in data:
            raise ValueError("Map record without id")

        values: Dict[str, Any] = {key: data.get(key) for key in _CATALOG_KEYS}
        for attr, key in _HARVEST_KEYS.items():
            value = data.get(key)
            if value is not None and attr in ("child_uuids", "layer_ids", "layer_errors"):
                value = tuple(value)
            values[attr] = value

        known = set(_CATALOG_KEYS) | set(_HARVEST_KEYS.values())
        values["extra"] = {k: v for k, v in data.items() if k not in known}
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key in _CATALOG_KEYS:
            data[key] = getattr(self, key)
        for attr, key in _HARVEST_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = list(value) if isinstance(value, tuple) else value
        return data


@dataclass(frozen=True)
class Diagnostic:
    """A single validation rule violation"""
    kind: DiagnosticKind
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.kind.value, "message": self.message}


@dataclass
class LogRecord:
    """Diagnostics for a map that was not emitted as an object"""
    id: Any
    image_id: Optional[str]
    logs: List[Diagnostic]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "imageId": self.image_id,
            "logs": [d.to_dict() for d in self.logs],
        }


@dataclass
class DomainObject:
    """Normalized spatiotemporal object"""
    id: Any
    name: Optional[str]
    data: Dict[str, Any]
    type: str = OBJECT_TYPE
    valid_since: Optional[int] = None
    valid_until: Optional[int] = None
    geometry: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none({
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "validSince": self.valid_since,
            "validUntil": self.valid_until,
            "data": drop_none(self.data),
            "geometry": self.geometry,
        })


@dataclass
class RelationRecord:
    """Directed membership edge from a map to a layer"""
    from_id: Any
    to_id: str
    type: str = RELATION_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.from_id, "to": self.to_id}


def emission_line(record) -> Dict[str, Any]:
    """Wrap an output record as {"type": ..., "obj": {...}}"""
    if isinstance(record, DomainObject):
        kind = EmissionType.OBJECT
    elif isinstance(record, RelationRecord):
        kind = EmissionType.RELATION
    elif isinstance(record, LogRecord):
        kind = EmissionType.LOG
    else:
        raise TypeError(f"Not an output record: {type(record).__name__}")
    return {"type": kind.value, "obj": record.to_dict()}
