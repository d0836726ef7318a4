"""
Mask resolution: Map Warper mask (image space) -> GeoJSON polygon (WGS84).

Map Warper stores each map's mask as OpenLayers GML in pixel coordinates
(origin bottom left) and the map's ground control points as pixel/lonlat
pairs. GdalMaskResolver downloads both and runs gdaltransform to
georeference the mask outline with the same transform the map was warped
with.

The resolver sits behind the MaskResolver interface so validation and
geometry code can be exercised without GDAL installed.
"""

import asyncio
import logging
import shutil
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .config import HarvestConfig
from .errors import FetchError, MaskResolutionError, MaskToolUnavailable
from .fetcher import Fetcher
from .models import MapRecord
from .paginator import gcps_url, mask_url

logger = logging.getLogger(__name__)

GDAL_MISSING_MESSAGE = "GDAL is not installed - GDAL is needed to convert Map Warper masks to GeoJSON"

Point = Tuple[float, float]
Ring = List[Point]

# gdaltransform flags per Map Warper transform option; auto lets GDAL choose
TRANSFORM_FLAGS = {
    "p1": ["-order", "1"],
    "p2": ["-order", "2"],
    "p3": ["-order", "3"],
    "tps": ["-tps"],
    "auto": [],
}

# Minimum GCPs for a polynomial of each order
MIN_GCPS = {"p1": 3, "p2": 6, "p3": 10, "tps": 3, "auto": 3}


@dataclass
class MaskResult:
    """Georeferenced mask plus the GCPs used to produce it"""
    geometry: Dict[str, Any]
    gcps: List[Dict[str, Any]]


class MaskResolver(ABC):
    """Converts a map's raster mask into a vector polygon"""

    @abstractmethod
    async def probe(self):
        """
        Check the toolchain once, before any network work.

        Raises:
            MaskToolUnavailable: resolver cannot run on this machine
        """

    @abstractmethod
    async def resolve(
        self,
        map_id: Any,
        transform_options: Optional[str] = None,
        height: Optional[int] = None,
    ) -> MaskResult:
        """
        Raises:
            MaskResolutionError: mask could not be converted
        """


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_ring(element: ET.Element) -> Ring:
    """Coordinates of a gml:LinearRing (gml:coordinates or gml:posList)"""
    for child in element.iter():
        name = _local_name(child.tag)
        text = (child.text or "").strip()
        if not text:
            continue
        if name == "coordinates":
            cs = child.get("cs", ",")
            ts = child.get("ts", " ")
            tuples = text.split(ts) if ts.strip() else text.split()
            ring = []
            for pair in tuples:
                parts = pair.strip().split(cs)
                if len(parts) >= 2:
                    ring.append((float(parts[0]), float(parts[1])))
            return ring
        if name == "posList":
            values = [float(v) for v in text.split()]
            return list(zip(values[0::2], values[1::2]))
    return []


def parse_mask_gml(text: str) -> List[List[Ring]]:
    """
    Parse an OpenLayers GML mask.

    Returns:
        One entry per gml:Polygon, each a list of rings (exterior first)
        in image coordinates
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise MaskResolutionError(f"Invalid mask GML: {e}") from e

    polygons = []
    for element in root.iter():
        if _local_name(element.tag) != "Polygon":
            continue
        try:
            rings = [
                ring for ring in (
                    _parse_ring(el) for el in element.iter() if _local_name(el.tag) == "LinearRing"
                )
                if ring
            ]
        except ValueError as e:
            raise MaskResolutionError(f"Invalid mask coordinates: {e}") from e
        if rings:
            polygons.append(rings)
    return polygons


def parse_gcps(body: Any) -> List[Dict[str, Any]]:
    """Ground control points from maps/<id>/gcps.json"""
    items = body.get("items", []) if isinstance(body, dict) else body
    gcps = []
    for item in items or []:
        # Map Warper wraps each point in its resource name in some versions
        point = item.get("gcp", item) if isinstance(item, dict) else None
        if not point:
            continue
        try:
            gcps.append({
                "x": float(point["x"]),
                "y": float(point["y"]),
                "lon": float(point["lon"]),
                "lat": float(point["lat"]),
            })
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Skipping malformed GCP: {point}")
    return gcps


def close_ring(ring: Sequence[Point]) -> Ring:
    ring = [tuple(p) for p in ring]
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return ring


def to_geojson(polygons: List[List[Ring]]) -> Dict[str, Any]:
    coordinates = [[[list(p) for p in close_ring(ring)] for ring in rings] for rings in polygons]
    if len(coordinates) == 1:
        return {"type": "Polygon", "coordinates": coordinates[0]}
    return {"type": "MultiPolygon", "coordinates": coordinates}


class GdalMaskResolver(MaskResolver):
    """MaskResolver backed by the Map Warper API and GDAL's gdaltransform"""

    def __init__(self, fetcher: Fetcher, config: HarvestConfig, command: str = "gdaltransform"):
        self.fetcher = fetcher
        self.config = config
        self.command = command
        self._probed: Optional[bool] = None

    async def _run(self, args: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
        process = await asyncio.create_subprocess_exec(
            self.command,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(stdin), self.config.timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise MaskResolutionError(
                f"{self.command} did not finish within {self.config.timeout_s:g}s"
            )
        return process.returncode, stdout, stderr

    async def probe(self):
        if self._probed:
            return
        if shutil.which(self.command) is None:
            raise MaskToolUnavailable(GDAL_MISSING_MESSAGE)
        try:
            returncode, stdout, _ = await self._run(["--version"])
        except (OSError, MaskResolutionError) as e:
            raise MaskToolUnavailable(f"{GDAL_MISSING_MESSAGE} ({e})") from e
        if returncode != 0:
            raise MaskToolUnavailable(GDAL_MISSING_MESSAGE)
        logger.info(f"Using {stdout.decode().strip()}")
        self._probed = True

    async def transform_points(
        self,
        points: List[Point],
        gcps: List[Dict[str, Any]],
        transform_options: Optional[str],
    ) -> List[Point]:
        """Pixel/line -> lon/lat through gdaltransform"""
        args: List[str] = []
        for gcp in gcps:
            args += ["-gcp", repr(gcp["x"]), repr(gcp["y"]), repr(gcp["lon"]), repr(gcp["lat"])]
        args += TRANSFORM_FLAGS.get(transform_options or "auto", [])

        stdin = "".join(f"{x!r} {y!r}\n" for x, y in points).encode()
        try:
            returncode, stdout, stderr = await self._run(args, stdin)
        except OSError as e:
            raise MaskResolutionError(f"Could not run {self.command}: {e}") from e
        if returncode != 0:
            raise MaskResolutionError(
                f"{self.command} failed: {stderr.decode(errors='replace').strip() or returncode}"
            )

        transformed = []
        try:
            for line in stdout.decode().splitlines():
                parts = line.split()
                if len(parts) >= 2:
                    transformed.append((float(parts[0]), float(parts[1])))
        except (UnicodeDecodeError, ValueError) as e:
            raise MaskResolutionError(f"Unreadable {self.command} output: {e}") from e
        if len(transformed) != len(points):
            raise MaskResolutionError(
                f"{self.command} returned {len(transformed)} points for {len(points)} inputs"
            )
        return transformed

    async def resolve(
        self,
        map_id: Any,
        transform_options: Optional[str] = None,
        height: Optional[int] = None,
    ) -> MaskResult:
        if transform_options and transform_options not in TRANSFORM_FLAGS:
            raise MaskResolutionError(f"Unknown transform option: {transform_options}")
        if height is None:
            raise MaskResolutionError(f"Map {map_id} has no image height")

        try:
            gml = await self.fetcher.fetch_text(mask_url(self.config.base_url, map_id))
            gcps = parse_gcps(await self.fetcher.fetch(gcps_url(self.config.base_url, map_id)))
        except FetchError as e:
            raise MaskResolutionError(str(e)) from e

        polygons = parse_mask_gml(gml)
        if not polygons:
            raise MaskResolutionError(f"Mask of map {map_id} contains no polygons")

        required = MIN_GCPS.get(transform_options or "auto", 3)
        if len(gcps) < required:
            raise MaskResolutionError(
                f"Map {map_id} has {len(gcps)} control points ({required} needed)"
            )

        # Mask y runs up from the bottom edge, GCP pixel lines run down
        flat = [
            (x, height - y)
            for rings in polygons
            for ring in rings
            for x, y in ring
        ]
        transformed = iter(await self.transform_points(flat, gcps, transform_options))

        geo_polygons = [
            [[next(transformed) for _ in ring] for ring in rings]
            for rings in polygons
        ]
        return MaskResult(geometry=to_geojson(geo_polygons), gcps=gcps)


async def resolve_mask(
    record: MapRecord,
    resolver: MaskResolver,
    delay_s: float = 0.0,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> MapRecord:
    """
    Attach the georeferenced mask (or the resolution error) to a record.

    Only maps with mask_status masked or masking are resolved; others, and
    records resolved in an earlier run, come back unchanged.
    """
    if not record.mask_requested or record.mask_resolved:
        return record

    logger.info(f"          Getting mask for map {record.id}")
    try:
        result = await resolver.resolve(record.id, record.transform_options, record.height)
    except MaskResolutionError as e:
        logger.error(f"Mask of map {record.id}: {e}")
        resolved = record.with_mask_error(str(e))
    else:
        rings = result.geometry.get("coordinates") or []
        logger.info(
            f"          Transformed mask for map {record.id}: "
            f"{len(rings[0]) if rings else 0} points"
        )
        resolved = record.with_mask(result.geometry, result.gcps)

    if delay_s:
        await (sleep or asyncio.sleep)(delay_s)
    return resolved
