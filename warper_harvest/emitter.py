"""Output records for maps and layers"""

import logging
from typing import Any, Dict, List, Optional

from .config import HarvestConfig
from .geometry import ProcessedGeometry
from .models import (
    Diagnostic,
    DomainObject,
    LogRecord,
    MapRecord,
    RelationRecord,
    layer_object_id,
)
from .paginator import tile_url

logger = logging.getLogger(__name__)


def get_year(depicts_year: Any, issue_year: Any) -> Optional[int]:
    """
    Year the map depicts, falling back to its issue year.

    Examples:
    - ("1854", None) -> 1854
    - (None, 1900) -> 1900
    - ("", "1900-1910") -> 1900
    """
    for value in (depicts_year, issue_year):
        if value in (None, ""):
            continue
        year = _leading_int(value)
        if year is not None:
            return year
    return None


def _leading_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    digits = ""
    for i, char in enumerate(text):
        if char.isdigit() or (i == 0 and char in "+-"):
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return None


def parse_bbox(bbox: Any) -> Optional[List[float]]:
    """Map Warper bboxes are 'minx,miny,maxx,maxy' strings"""
    if not bbox:
        return None
    if isinstance(bbox, (list, tuple)):
        return [float(v) for v in bbox]
    try:
        return [float(v) for v in str(bbox).split(",")]
    except ValueError:
        logger.warning(f"Unparseable bbox: {bbox!r}")
        return None


def log_record(record: MapRecord, diagnostics: List[Diagnostic]) -> LogRecord:
    return LogRecord(id=record.id, image_id=record.nypl_digital_id, logs=list(diagnostics))


def layer_relations(record: MapRecord) -> List[RelationRecord]:
    """One st:in relation per layer the map belongs to"""
    if not record.layer_ids:
        return []
    return [
        RelationRecord(from_id=record.id, to_id=layer_object_id(layer_id))
        for layer_id in record.layer_ids
    ]


def map_object(record: MapRecord, processed: ProcessedGeometry, config: HarvestConfig) -> DomainObject:
    year = get_year(record.depicts_year, record.issue_year)

    data = {
        "description": record.description,
        "imageId": record.nypl_digital_id,
        "uuid": record.uuid,
        "parentUuid": record.parent_uuid,
        "childUuids": list(record.child_uuids) if record.child_uuids else None,
        "inset": str(record.uuid).startswith("inset"),
        "masked": record.mask_requested,
        "nyplUrl": f"{config.digital_collections_url}{record.uuid}",
        "tileUrl": tile_url(config.base_url, "maps", record.id),
        "area": processed.area,
        "gcps": record.gcps,
    }

    return DomainObject(
        id=record.id,
        name=record.title,
        valid_since=year,
        valid_until=year,
        data=data,
        geometry=processed.geometry,
    )


def layer_object(layer: Dict[str, Any], config: HarvestConfig) -> DomainObject:
    """Catalog layer as an object in the same id space as maps"""
    year = get_year(layer.get("depicts_year"), layer.get("issue_year"))
    return DomainObject(
        id=layer_object_id(layer["id"]),
        name=layer.get("name"),
        valid_since=year,
        valid_until=year,
        data={
            "mapCount": layer.get("maps_count"),
            "tileUrl": tile_url(config.base_url, "layers", layer["id"]),
            "bbox": parse_bbox(layer.get("bbox")),
        },
    )
