"""
Download stage: catalog probing, paging, error records and map layers
"""

from dataclasses import replace

import pytest

from conftest import BASE_URL, FakeResponse, FakeSession, map_item
from warper_harvest.acquisition import (
    LAYERS_FILE,
    MAPS_FILE,
    CatalogHarvester,
    fetch_map_layers,
    harvest_pages,
    probe_total,
)
from warper_harvest.errors import FetchError, HarvestAborted
from warper_harvest.fetcher import Fetcher
from warper_harvest.models import CatalogPage, PageError
from warper_harvest.paginator import layers_url, map_layers_url, maps_url
from warper_harvest.sink import read_ndjson


def maps_page(page):
    return maps_url(BASE_URL, page, 2)


def harvester_for(routes, config):
    session = FakeSession(routes)
    fetcher = Fetcher.from_config(session, config)
    return CatalogHarvester(fetcher, config), session


class TestHarvestPages:
    """Sequential page retrieval"""

    @pytest.mark.asyncio
    async def test_stops_on_short_page(self, config):
        session = FakeSession({
            maps_page(1): {"items": [{"id": 1}, {"id": 2}]},
            maps_page(2): {"items": [{"id": 3}]},
        })
        fetcher = Fetcher.from_config(session, config)

        pages = [p async for p in harvest_pages(fetcher, maps_page, 2)]

        assert [p.page for p in pages] == [1, 2]
        assert [p.has_more for p in pages] == [True, False]
        assert session.requests == [maps_page(1), maps_page(2)]

    @pytest.mark.asyncio
    async def test_stops_on_empty_page(self, config):
        session = FakeSession({
            maps_page(1): {"items": [{"id": 1}, {"id": 2}]},
            maps_page(2): {"items": []},
        })
        fetcher = Fetcher.from_config(session, config)

        pages = [p async for p in harvest_pages(fetcher, maps_page, 2)]

        assert len(pages) == 1
        assert len(session.requests) == 2

    @pytest.mark.asyncio
    async def test_reuses_first_body(self, config):
        session = FakeSession({maps_page(2): {"items": [{"id": 3}]}})
        fetcher = Fetcher.from_config(session, config)

        pages = [
            p async for p in harvest_pages(
                fetcher, maps_page, 2, pages=[1, 2], first_body={"items": [{"id": 1}, {"id": 2}]}
            )
        ]

        assert [len(p.items) for p in pages] == [2, 1]
        assert session.requests == [maps_page(2)]

    @pytest.mark.asyncio
    async def test_failed_page_is_recorded_and_paging_continues(self, config):
        session = FakeSession({
            maps_page(1): {"items": [{"id": 1}, {"id": 2}]},
            maps_page(2): FakeResponse(status=500),
            maps_page(3): {"items": [{"id": 5}]},
        })
        fetcher = Fetcher.from_config(session, config)

        results = [r async for r in harvest_pages(fetcher, maps_page, 2, pages=[1, 2, 3])]

        assert isinstance(results[0], CatalogPage)
        assert isinstance(results[1], PageError)
        assert results[1].page_index == 2
        assert results[1].url == maps_page(2)
        assert results[1].error == "HTTP 500"
        assert isinstance(results[2], CatalogPage)
        assert session.count(maps_page(2)) == config.retries

    @pytest.mark.asyncio
    async def test_strict_mode_raises(self, config):
        session = FakeSession({maps_page(1): FakeResponse(status=404)})
        fetcher = Fetcher.from_config(session, config)

        with pytest.raises(FetchError):
            async for _ in harvest_pages(fetcher, maps_page, 2, strict=True):
                pass


class TestCatalogSize:
    """Catalog size request"""

    @pytest.mark.asyncio
    async def test_returns_total_and_body(self, config):
        body = {"total_entries": 3, "items": [{"id": 1}, {"id": 2}]}
        fetcher = Fetcher.from_config(FakeSession({maps_page(1): body}), config)

        total, first = await probe_total(fetcher, config)

        assert total == 3
        assert first == body

    @pytest.mark.asyncio
    async def test_missing_total_aborts(self, config):
        fetcher = Fetcher.from_config(FakeSession({maps_page(1): {"items": []}}), config)

        with pytest.raises(HarvestAborted) as excinfo:
            await probe_total(fetcher, config)

        assert "Error in body.total_entries" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_integer_total_aborts(self, config):
        fetcher = Fetcher.from_config(
            FakeSession({maps_page(1): {"total_entries": "lots", "items": []}}), config
        )
        with pytest.raises(HarvestAborted):
            await probe_total(fetcher, config)

    @pytest.mark.asyncio
    async def test_failed_size_request_aborts(self, config):
        fetcher = Fetcher.from_config(FakeSession({maps_page(1): FakeResponse(status=503)}), config)
        with pytest.raises(HarvestAborted):
            await probe_total(fetcher, config)


class TestCatalogHarvester:
    """End-to-end download stage"""

    @pytest.mark.asyncio
    async def test_three_maps_two_per_page_takes_two_requests(self, config, temp_dir):
        harvester, session = harvester_for({
            maps_page(1): {"total_entries": 3, "items": [map_item(1), map_item(2)]},
            maps_page(2): {"items": [map_item(3)]},
            layers_url(BASE_URL, 1, 2): {"items": []},
        }, config)

        stats = await harvester.download(temp_dir)

        map_requests = [u for u in session.requests if u.startswith(BASE_URL + "maps.json")]
        assert map_requests == [maps_page(1), maps_page(2)]
        lines = list(read_ndjson(temp_dir / MAPS_FILE))
        assert [line["data"]["id"] for line in lines] == [1, 2, 3]
        assert all(line["type"] == "map" for line in lines)
        assert stats["maps"] == 3
        assert stats["total_entries"] == 3

    @pytest.mark.asyncio
    async def test_empty_catalog(self, config, temp_dir):
        harvester, session = harvester_for({
            maps_page(1): {"total_entries": 0, "items": []},
            layers_url(BASE_URL, 1, 2): {"items": []},
        }, config)

        stats = await harvester.download(temp_dir)

        assert list(read_ndjson(temp_dir / MAPS_FILE)) == []
        assert session.count(maps_page(1)) == 1
        assert stats["maps"] == 0

    @pytest.mark.asyncio
    async def test_page_error_line(self, config, temp_dir):
        harvester, _ = harvester_for({
            maps_page(1): {"total_entries": 5, "items": [map_item(1), map_item(2)]},
            maps_page(2): FakeResponse(status=500),
            maps_page(3): {"items": [map_item(5)]},
            layers_url(BASE_URL, 1, 2): {"items": []},
        }, config)

        stats = await harvester.download(temp_dir)

        lines = list(read_ndjson(temp_dir / MAPS_FILE))
        assert [line["type"] for line in lines] == ["map", "map", "error", "map"]
        assert lines[2]["data"] == {"error": "HTTP 500", "url": maps_page(2), "pageIndex": 2}
        assert stats["page_errors"] == 1

    @pytest.mark.asyncio
    async def test_size_request_failure_writes_nothing(self, config, temp_dir):
        harvester, _ = harvester_for({}, config)

        with pytest.raises(HarvestAborted):
            await harvester.download(temp_dir)

        assert not (temp_dir / MAPS_FILE).exists()
        assert not (temp_dir / LAYERS_FILE).exists()

    @pytest.mark.asyncio
    async def test_layers_file(self, config, temp_dir):
        harvester, _ = harvester_for({
            maps_page(1): {"total_entries": 0, "items": []},
            layers_url(BASE_URL, 1, 2): {"items": [{"id": 9, "name": "Manhattan 1854"}, {"id": 10}]},
            layers_url(BASE_URL, 2, 2): {"items": []},
        }, config)

        await harvester.download(temp_dir)

        lines = list(read_ndjson(temp_dir / LAYERS_FILE))
        assert [line["data"]["id"] for line in lines] == [9, 10]
        assert all(line["type"] == "layer" for line in lines)

    @pytest.mark.asyncio
    async def test_items_without_id_are_skipped(self, config, temp_dir):
        harvester, _ = harvester_for({
            maps_page(1): {"total_entries": 2, "items": [map_item(1), {"title": "no id"}]},
            layers_url(BASE_URL, 1, 2): {"items": []},
        }, config)

        stats = await harvester.download(temp_dir)

        assert [line["data"]["id"] for line in read_ndjson(temp_dir / MAPS_FILE)] == [1]
        assert stats["invalid_items"] == 1


class TestMapLayers:
    """Per-map layer membership"""

    @pytest.mark.asyncio
    async def test_fetch_map_layers(self, config):
        session = FakeSession({map_layers_url(BASE_URL, 1, 1, 2): {"items": [{"id": 7}]}})
        fetcher = Fetcher.from_config(session, config)

        layer_ids, layer_errors = await fetch_map_layers(fetcher, config, 1)

        assert layer_ids == [7]
        assert layer_errors == []

    @pytest.mark.asyncio
    async def test_failed_lookup_is_recorded(self, config):
        url = map_layers_url(BASE_URL, 1, 1, 2)
        fetcher = Fetcher.from_config(FakeSession({url: FakeResponse(status=500)}), config)

        layer_ids, layer_errors = await fetch_map_layers(fetcher, config, 1)

        assert layer_ids == []
        assert layer_errors == [{"error": "HTTP 500", "url": url}]

    @pytest.mark.asyncio
    async def test_included_in_map_lines(self, config, temp_dir):
        config = replace(config, include_map_layers=True)
        harvester, _ = harvester_for({
            maps_page(1): {"total_entries": 1, "items": [map_item(1)]},
            layers_url(BASE_URL, 1, 2): {"items": []},
            map_layers_url(BASE_URL, 1, 1, 2): {"items": [{"id": 7}, {"id": 8}]},
            map_layers_url(BASE_URL, 1, 2, 2): {"items": []},
        }, config)

        await harvester.download(temp_dir)

        (line,) = list(read_ndjson(temp_dir / MAPS_FILE))
        assert line["data"]["layerIds"] == [7, 8]
        assert line["data"]["layerErrors"] == []
