"""
Map Warper Catalog Harvest (download stage)

PURPOSE: Page through the Map Warper catalog and write every map and layer
to newline-delimited JSON for the transform stage.

ARCHITECTURE:
1. Probe maps.json once for total_entries (fatal if unavailable)
2. Harvest layers.json until a short page (layers.ndjson)
3. Harvest maps.json pages 1..ceil(total / per_page), strictly in order
4. Optionally look up each map's layers (maps/<id>/layers.json)

A failed page after the probe is written as an error line and the harvest
carries on.
"""

import itertools
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .config import HarvestConfig
from .errors import FetchError, HarvestAborted
from .fetcher import Fetcher
from .models import CatalogPage, MapRecord, PageError
from .paginator import layers_url, map_layers_url, maps_url, page_indices
from .sink import NdjsonWriter

logger = logging.getLogger(__name__)

MAPS_FILE = "maps.ndjson"
LAYERS_FILE = "layers.ndjson"


async def harvest_pages(
    fetcher: Fetcher,
    url_for_page: Callable[[int], str],
    page_size: int,
    pages: Optional[Iterable[int]] = None,
    strict: bool = False,
    first_body: Optional[Dict[str, Any]] = None,
) -> AsyncIterator[Union[CatalogPage, PageError]]:
    """
    Fetch catalog pages one after another.

    Args:
        fetcher: Fetcher used for every page
        url_for_page: Builds the URL for a 1-based page index
        page_size: Requested items per page
        pages: Page indices to fetch; None pages until the catalog runs out
        strict: Raise FetchError instead of yielding PageError
        first_body: Already fetched body of page 1 (reused, not refetched)

    Yields:
        CatalogPage for every page with items, PageError for failed pages
    """
    open_ended = pages is None
    indices = itertools.count(1) if open_ended else pages

    for page in indices:
        url = url_for_page(page)

        if page == 1 and first_body is not None:
            body = first_body
        else:
            try:
                body = await fetcher.fetch(url)
            except FetchError as e:
                if strict:
                    raise
                logger.warning(f"Page {page} failed: {e}")
                yield PageError(error=e.message, url=url, page_index=page)
                if open_ended:
                    # No total to aim for, so the catalog end is unknown
                    break
                continue

        items = body.get("items") if isinstance(body, dict) else None
        if not items:
            break

        catalog_page = CatalogPage(page=page, per_page=page_size, items=list(items), url=url)
        yield catalog_page

        if not catalog_page.has_more:
            break


async def probe_total(fetcher: Fetcher, config: HarvestConfig) -> Tuple[int, Dict[str, Any]]:
    """
    First maps request: how many maps does the catalog hold?

    Returns:
        (total_entries, body) where body doubles as page 1

    Raises:
        HarvestAborted: request failed or total_entries missing
    """
    url = maps_url(config.base_url, 1, config.per_page)
    try:
        body = await fetcher.fetch(url)
    except FetchError as e:
        raise HarvestAborted(f"Could not determine catalog size: {e}") from e

    total = body.get("total_entries") if isinstance(body, dict) else None
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise HarvestAborted(f"Error in body.total_entries ({url})")

    return total, body


async def fetch_map_layers(
    fetcher: Fetcher,
    config: HarvestConfig,
    map_id: Any,
) -> Tuple[List[Any], List[Dict[str, Any]]]:
    """
    Layers a single map belongs to.

    Returns:
        (layer_ids, layer_errors) where layer_errors holds {error, url}
    """
    layer_fetcher = fetcher.with_delay(config.map_layers_delay_s)
    layer_ids: List[Any] = []
    layer_errors: List[Dict[str, Any]] = []

    pages = harvest_pages(
        layer_fetcher,
        lambda page: map_layers_url(config.base_url, map_id, page, config.per_page),
        config.per_page,
    )
    async for result in pages:
        if isinstance(result, PageError):
            layer_errors.append({"error": result.error, "url": result.url})
            continue
        layer_ids.extend(layer["id"] for layer in result.items if layer and "id" in layer)

    return layer_ids, layer_errors


class CatalogHarvester:
    """Download stage: catalog API -> intermediate NDJSON"""

    def __init__(self, fetcher: Fetcher, config: HarvestConfig):
        self.fetcher = fetcher
        self.config = config

        self.stats = {
            "total_entries": 0,
            "pages_fetched": 0,
            "page_errors": 0,
            "maps": 0,
            "invalid_items": 0,
            "layers": 0,
            "layer_page_errors": 0,
            "map_layer_errors": 0,
        }

    async def harvest_layers(self) -> AsyncIterator[Dict[str, Any]]:
        """Intermediate lines for the layer catalog"""
        pages = harvest_pages(
            self.fetcher,
            lambda page: layers_url(self.config.base_url, page, self.config.per_page),
            self.config.per_page,
        )
        async for result in pages:
            if isinstance(result, PageError):
                self.stats["layer_page_errors"] += 1
                yield {"type": "error", "data": result.to_dict()}
                continue
            for layer in result.items:
                if not layer:
                    continue
                self.stats["layers"] += 1
                yield {"type": "layer", "data": layer}

    async def harvest_maps(self, total: int, first_body: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """Intermediate lines for the map catalog, in page order"""
        pages = harvest_pages(
            self.fetcher,
            lambda page: maps_url(self.config.base_url, page, self.config.per_page),
            self.config.per_page,
            pages=page_indices(total, self.config.per_page),
            first_body=first_body,
        )
        async for result in pages:
            if isinstance(result, PageError):
                self.stats["page_errors"] += 1
                yield {"type": "error", "data": result.to_dict()}
                continue

            self.stats["pages_fetched"] += 1
            for item in result.items:
                if not item:
                    continue
                try:
                    record = MapRecord.from_dict(item)
                except ValueError as e:
                    logger.warning(f"Skipping catalog item on page {result.page}: {e}")
                    self.stats["invalid_items"] += 1
                    continue

                if self.config.include_map_layers:
                    layer_ids, layer_errors = await fetch_map_layers(
                        self.fetcher, self.config, record.id
                    )
                    self.stats["map_layer_errors"] += len(layer_errors)
                    record = record.with_layers(layer_ids, layer_errors)

                self.stats["maps"] += 1
                yield {"type": "map", "data": record.to_dict()}

    async def download(self, data_dir: Path) -> Dict[str, Any]:
        """
        Run the download stage.

        Writes data_dir/layers.ndjson and data_dir/maps.ndjson.

        Raises:
            HarvestAborted: catalog size could not be determined
        """
        data_dir = Path(data_dir)
        logger.info(f"Starting Map Warper harvest from {self.config.base_url}")

        total, first_body = await probe_total(self.fetcher, self.config)
        self.stats["total_entries"] = total
        logger.info(f"Catalog holds {total} maps ({self.config.per_page} per page)")

        with NdjsonWriter(data_dir / LAYERS_FILE) as layers_out:
            async for line in self.harvest_layers():
                layers_out.write(line)
        logger.info(f"Harvested {self.stats['layers']} layers")

        with NdjsonWriter(data_dir / MAPS_FILE) as maps_out:
            async for line in self.harvest_maps(total, first_body):
                maps_out.write(line)

        logger.info(
            f"Harvested {self.stats['maps']} maps from {self.stats['pages_fetched']} pages "
            f"({self.stats['page_errors']} failed pages)"
        )
        return self.stats
