"""
Map Warper Transform Stage

Per map, strictly in input order:

    Fetched -> (MaskResolved | MaskSkipped) -> Validated
            -> Logged                                 (any diagnostic)
            -> GeometryProcessed -> Emitted           (no diagnostics)

Maps without a bbox and non-map catalog entries are dropped before mask
resolution. Layers become objects of their own.
"""

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional

from tqdm import tqdm

from .acquisition import LAYERS_FILE, MAPS_FILE
from .config import HarvestConfig
from .emitter import layer_object, layer_relations, log_record, map_object
from .geometry import process_geometry
from .mask import MaskResolver, resolve_mask
from .models import Diagnostic, DiagnosticKind, MapRecord, emission_line
from .sink import NdjsonSink, read_ndjson
from .validator import Validator, is_admissible

logger = logging.getLogger(__name__)

OBJECTS_FILE = "objects.ndjson"
LOGS_FILE = "logs.ndjson"


class MapTransformer:
    """Transform stage: intermediate NDJSON -> objects, relations and logs"""

    def __init__(
        self,
        config: HarvestConfig,
        resolver: MaskResolver,
        validator: Optional[Validator] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        progress: bool = True,
    ):
        self.config = config
        self.resolver = resolver
        self.validator = validator or Validator.from_config(config)
        self.sleep = sleep or asyncio.sleep
        self.progress = progress

        self.stats: Dict[str, Any] = {
            "maps_read": 0,
            "maps_filtered": 0,
            "masks_resolved": 0,
            "mask_errors": 0,
            "objects": 0,
            "relations": 0,
            "logs": 0,
            "layers": 0,
            "page_errors": 0,
            "diagnostics": Counter(),
        }

    async def transform_map(self, record: MapRecord) -> List[Dict[str, Any]]:
        """
        Emission unit for one admitted map.

        Returns:
            [log line] or [object line, relation lines...]
        """
        if record.mask_requested and not record.mask_resolved:
            record = await resolve_mask(record, self.resolver, self.config.mask_delay_s, self.sleep)
            if record.mask_error:
                self.stats["mask_errors"] += 1
            else:
                self.stats["masks_resolved"] += 1

        diagnostics = self.validator.validate(record)
        if diagnostics:
            # Something's not right! Only write the log, not the map
            return self._log(record, diagnostics)

        processed = process_geometry(record.mask_geometry, self.config)
        if processed.geometry is None and not self.config.keep_ungeometried_objects:
            return self._log(record, [
                Diagnostic(DiagnosticKind.GEOMETRY_UNUSABLE, "Mask geometry did not survive clipping")
            ])

        obj = map_object(record, processed, self.config)
        relations = layer_relations(record)
        self.stats["objects"] += 1
        self.stats["relations"] += len(relations)
        return [emission_line(obj)] + [emission_line(r) for r in relations]

    def _log(self, record: MapRecord, diagnostics: List[Diagnostic]) -> List[Dict[str, Any]]:
        self.stats["logs"] += 1
        self.stats["diagnostics"].update(d.kind.value for d in diagnostics)
        return [emission_line(log_record(record, diagnostics))]

    def _read_lines(self, data_dir: Path) -> Iterator[Dict[str, Any]]:
        for name in (MAPS_FILE, LAYERS_FILE):
            path = data_dir / name
            if not path.exists():
                logger.warning(f"{path} not found, skipping")
                continue
            yield from read_ndjson(path)

    async def transform_lines(self, lines: Iterable[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
        """Emission lines for intermediate lines, preserving input order"""
        with tqdm(desc="Transforming", unit="record", disable=not self.progress) as bar:
            for line in lines:
                kind = line.get("type")
                data = line.get("data") or {}

                if kind == "map":
                    self.stats["maps_read"] += 1
                    try:
                        record = MapRecord.from_dict(data)
                    except ValueError as e:
                        logger.warning(f"Skipping intermediate map line: {e}")
                        self.stats["maps_filtered"] += 1
                        bar.update(1)
                        continue
                    if not is_admissible(record):
                        self.stats["maps_filtered"] += 1
                    else:
                        for out in await self.transform_map(record):
                            yield out
                elif kind == "layer":
                    self.stats["layers"] += 1
                    yield emission_line(layer_object(data, self.config))
                elif kind == "error":
                    self.stats["page_errors"] += 1
                    logger.warning(
                        f"Harvest error on page {data.get('pageIndex')} "
                        f"({data.get('url')}): {data.get('error')}"
                    )
                else:
                    logger.warning(f"Unknown intermediate record type: {kind!r}")

                bar.update(1)

    async def transform(self, data_dir: Path, output_dir: Optional[Path] = None) -> Dict[str, Any]:
        """
        Run the transform stage.

        Reads data_dir/maps.ndjson and data_dir/layers.ndjson, writes
        objects.ndjson and logs.ndjson to output_dir (data_dir by default).
        """
        data_dir = Path(data_dir)
        output_dir = Path(output_dir or data_dir)

        await self.resolver.probe()

        with NdjsonSink(output_dir / OBJECTS_FILE, output_dir / LOGS_FILE) as sink:
            async for out in self.transform_lines(self._read_lines(data_dir)):
                sink.write(out)

        logger.info(
            f"Transformed {self.stats['maps_read']} maps: {self.stats['objects']} objects, "
            f"{self.stats['relations']} relations, {self.stats['logs']} logs "
            f"({self.stats['maps_filtered']} filtered)"
        )
        return self.stats
