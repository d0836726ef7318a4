"""
Map Warper Harvester

Two-stage pipeline that downloads the Map Warper catalog of georeferenced
historical maps, vectorizes and validates each map's mask, and emits
spatiotemporal objects or diagnostic logs as NDJSON.
"""

from .acquisition import CatalogHarvester, fetch_map_layers, harvest_pages, probe_total
from .config import HarvestConfig
from .emitter import layer_object, layer_relations, log_record, map_object
from .errors import (
    FetchError,
    HarvestAborted,
    HarvestError,
    MaskResolutionError,
    MaskToolUnavailable,
)
from .fetcher import Fetcher
from .geometry import ProcessedGeometry, area_km2, clip_to_world, process_geometry
from .mask import GdalMaskResolver, MaskResolver, MaskResult, resolve_mask
from .models import (
    CatalogPage,
    Diagnostic,
    DiagnosticKind,
    DomainObject,
    LogRecord,
    MapRecord,
    MaskStatus,
    PageError,
    RelationRecord,
)
from .paginator import page_count, page_indices
from .sink import NdjsonSink, NdjsonWriter, read_ndjson
from .transformation import MapTransformer
from .validator import Validator, is_admissible, validate

__all__ = [
    # Config / errors
    "HarvestConfig",
    "HarvestError",
    "FetchError",
    "HarvestAborted",
    "MaskResolutionError",
    "MaskToolUnavailable",
    # Model
    "CatalogPage",
    "PageError",
    "MapRecord",
    "MaskStatus",
    "Diagnostic",
    "DiagnosticKind",
    "LogRecord",
    "DomainObject",
    "RelationRecord",
    # Download stage
    "page_count",
    "page_indices",
    "Fetcher",
    "harvest_pages",
    "probe_total",
    "fetch_map_layers",
    "CatalogHarvester",
    # Transform stage
    "MaskResolver",
    "MaskResult",
    "GdalMaskResolver",
    "resolve_mask",
    "Validator",
    "validate",
    "is_admissible",
    "ProcessedGeometry",
    "area_km2",
    "clip_to_world",
    "process_geometry",
    "map_object",
    "layer_object",
    "layer_relations",
    "log_record",
    "MapTransformer",
    # Storage
    "NdjsonWriter",
    "NdjsonSink",
    "read_ndjson",
]
