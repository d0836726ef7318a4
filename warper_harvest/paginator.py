"""Page arithmetic and catalog URLs for the Map Warper API"""

import math
from typing import Any, Iterator


def page_count(total_items: int, page_size: int) -> int:
    if total_items < 0:
        raise ValueError(f"total_items must be non-negative, got {total_items}")
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    return math.ceil(total_items / page_size)


def page_indices(total_items: int, page_size: int) -> Iterator[int]:
    """
    Pages needed to retrieve the full catalog, 1-based.

    Examples:
    - (0, 250) -> nothing
    - (3, 2) -> 1, 2
    - (500, 250) -> 1, 2
    """
    return iter(range(1, page_count(total_items, page_size) + 1))


def paginate(page: int, per_page: int) -> str:
    """Query string; page 1 is the API default and is left out"""
    query = f"per_page={per_page}"
    if page > 1:
        query += f"&page={page}"
    return query


def maps_url(base_url: str, page: int, per_page: int) -> str:
    return f"{base_url}maps.json?{paginate(page, per_page)}"


def layers_url(base_url: str, page: int, per_page: int) -> str:
    return f"{base_url}layers.json?{paginate(page, per_page)}"


def map_layers_url(base_url: str, map_id: Any, page: int, per_page: int) -> str:
    return f"{base_url}maps/{map_id}/layers.json?{paginate(page, per_page)}"


def mask_url(base_url: str, map_id: Any) -> str:
    return f"{base_url}shared/masks/{map_id}.gml.ol"


def gcps_url(base_url: str, map_id: Any) -> str:
    return f"{base_url}maps/{map_id}/gcps.json"


def tile_url(base_url: str, kind: str, object_id: Any) -> str:
    """XYZ tile template for a map or layer"""
    return f"{base_url}{kind}/tile/{object_id}/{{z}}/{{x}}/{{y}}.png"
