"""
Map Warper harvester command line.

RUN:
    python -m warper_harvest download --data-dir data/mapwarper
    python -m warper_harvest transform --data-dir data/mapwarper
    python -m warper_harvest run --data-dir data/mapwarper --include-map-layers
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from .acquisition import CatalogHarvester
from .config import HarvestConfig
from .errors import HarvestAborted
from .fetcher import Fetcher
from .mask import GdalMaskResolver
from .transformation import MapTransformer

logger = logging.getLogger(__name__)


def _mask_resolver(fetcher: Fetcher, config: HarvestConfig) -> GdalMaskResolver:
    # resolve_mask sleeps after each map, the fetches themselves do not
    return GdalMaskResolver(fetcher.with_delay(0), config)


async def run_download(config: HarvestConfig, data_dir: Path) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        fetcher = Fetcher.from_config(session, config)
        return await CatalogHarvester(fetcher, config).download(data_dir)


async def run_transform(config: HarvestConfig, data_dir: Path, progress: bool = True) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        resolver = _mask_resolver(Fetcher.from_config(session, config), config)
        transformer = MapTransformer(config, resolver, progress=progress)
        return await transformer.transform(data_dir)


async def run_all(config: HarvestConfig, data_dir: Path, progress: bool = True) -> Dict[str, Any]:
    """Download then transform; GDAL is checked before the first request"""
    async with aiohttp.ClientSession() as session:
        fetcher = Fetcher.from_config(session, config)
        resolver = _mask_resolver(fetcher, config)
        await resolver.probe()

        download_stats = await CatalogHarvester(fetcher, config).download(data_dir)
        transform_stats = await MapTransformer(config, resolver, progress=progress).transform(data_dir)
        return {"download": download_stats, "transform": transform_stats}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warper_harvest",
        description="Harvest and validate the Map Warper catalog",
    )
    parser.add_argument(
        "step",
        choices=["download", "transform", "run"],
        help="Pipeline stage to run ('run' does both)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default="data/mapwarper",
        help="Directory for intermediate and output NDJSON files",
    )
    parser.add_argument("--base-url", type=str, default=None, help="Map Warper base URL")
    parser.add_argument("--per-page", type=int, default=None, help="Catalog page size")
    parser.add_argument("--sleep", type=float, default=None, help="Seconds to wait after each page")
    parser.add_argument(
        "--include-map-layers",
        action="store_true",
        default=None,
        help="Look up layer membership of every map",
    )
    parser.add_argument(
        "--clip-to-world",
        action="store_true",
        default=None,
        help="Buffer and clip mask geometries to the world bounds",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bar")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> HarvestConfig:
    overrides: Dict[str, Any] = dict(
        base_url=args.base_url,
        per_page=args.per_page,
        include_map_layers=args.include_map_layers,
        clip_to_world=args.clip_to_world,
    )
    if args.sleep is not None:
        overrides.update(
            page_delay_s=args.sleep,
            map_layers_delay_s=args.sleep / 10,
            mask_delay_s=args.sleep / 20,
        )
    return HarvestConfig.from_env(**overrides)


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    config = config_from_args(args)
    data_dir = Path(args.data_dir)
    progress = not args.no_progress

    try:
        if args.step == "download":
            stats = await run_download(config, data_dir)
        elif args.step == "transform":
            stats = await run_transform(config, data_dir, progress)
        else:
            stats = await run_all(config, data_dir, progress)
    except HarvestAborted as e:
        logger.error(f"Harvest aborted: {e}")
        return 1

    logger.info(f"Run summary: {stats}")
    return 0


def cli():
    sys.exit(asyncio.run(main()))
