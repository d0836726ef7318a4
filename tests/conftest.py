"""
Pytest configuration and shared fixtures for Map Warper harvest tests
"""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to path
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from warper_harvest.config import HarvestConfig
from warper_harvest.errors import MaskResolutionError, MaskToolUnavailable
from warper_harvest.mask import MaskResolver

BASE_URL = "http://warper.test/"


class FakeResponse:
    """Stands in for aiohttp.ClientResponse inside `async with session.get()`"""

    def __init__(self, status: int = 200, body: Any = None, text: Optional[str] = None,
                 invalid_json: bool = False):
        self.status = status
        self.body = body
        self._text = text
        self.invalid_json = invalid_json

    async def json(self, content_type=None):
        if self.invalid_json:
            raise json.JSONDecodeError("Expecting value", "<html>", 0)
        return self.body

    async def text(self):
        if self._text is not None:
            return self._text
        return json.dumps(self.body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """
    Minimal aiohttp.ClientSession.

    routes maps a URL to a response, an exception, or a list of those
    consumed in order (the last one repeats). Unknown URLs answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = dict(routes or {})
        self.requests: List[str] = []

    def get(self, url, timeout=None):
        self.requests.append(url)
        route = self.routes.get(url, FakeResponse(status=404))
        if isinstance(route, list):
            response = route.pop(0) if len(route) > 1 else route[0]
        else:
            response = route
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return FakeResponse(body=response)
        return response

    def count(self, url: str) -> int:
        return self.requests.count(url)


class RecordingSleep:
    """Drop-in for asyncio.sleep that only records the requested waits"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


class StaticMaskResolver(MaskResolver):
    """MaskResolver answering from a dict: map id -> MaskResult or error message"""

    def __init__(self, results: Optional[Dict[Any, Any]] = None, available: bool = True):
        self.results = results or {}
        self.available = available
        self.resolved: List[Any] = []
        self.availability_checks = 0

    async def probe(self):
        self.availability_checks += 1
        if not self.available:
            raise MaskToolUnavailable("GDAL is not installed")

    async def resolve(self, map_id, transform_options=None, height=None):
        self.resolved.append(map_id)
        result = self.results.get(map_id)
        if result is None:
            raise MaskResolutionError(f"No mask for map {map_id}")
        if isinstance(result, str):
            raise MaskResolutionError(result)
        return result


def square(x: float = 0.0, y: float = 0.0, size: float = 1.0) -> Dict[str, Any]:
    """Closed 5-coordinate square polygon"""
    return {
        'type': 'Polygon',
        'coordinates': [[
            [x, y], [x + size, y], [x + size, y + size], [x, y + size], [x, y]
        ]]
    }


def map_item(map_id: Any, **overrides) -> Dict[str, Any]:
    """Catalog item for a georeferenced, masked map"""
    item = {
        'id': map_id,
        'title': f'Map {map_id}',
        'description': 'From: Atlas of the city of New York',
        'bbox': '-74.01,40.70,-73.97,40.75',
        'map_type': 'is_map',
        'status': 'warped',
        'mask_status': 'masked',
        'depicts_year': '1854',
        'issue_year': None,
        'uuid': f'uuid-{map_id}',
        'parent_uuid': 'parent-uuid',
        'nypl_digital_id': f'{map_id}0000',
        'transform_options': 'p1',
        'width': 1000,
        'height': 800,
    }
    item.update(overrides)
    return item


@pytest.fixture
def temp_dir():
    """Create temporary directory for test files"""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def config():
    """Small pages, no waiting"""
    return HarvestConfig(base_url=BASE_URL, per_page=2).without_delays()


@pytest.fixture
def sleep():
    return RecordingSleep()

