# ============================================================================
# SEARCH ORCHESTRATOR TESTS
# ============================================================================
"""
Covers:
1. A search clears every other source's results, layers and highlight
2. Only the selected strategy runs
3. lastSearchedFilters is a snapshot
4. A superseded search never commits or touches loading flags
5. Strategy failures clear the loading flag
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FEATURE_URL, run, unique_value_renderer
from fieldmap.core.errors import NetworkFailure
from fieldmap.engine import events
from fieldmap.engine.search import search_dendra, to_graphic
from fieldmap.schemas.catalog import CatalogItem, LayerStatus
from fieldmap.schemas.common import DataSource
from fieldmap.schemas.observations import (
    EBirdObservation,
    INaturalistObservation,
    SearchFilters,
    SourceName,
)
from fieldmap.schemas.timeseries import DendraStation

SRC = DataSource(name="test", url="https://example.org")


def inat(i):
    return INaturalistObservation(id=i, location=(-120.4, 34.5), observed_on="2025-01-01")


def bird(i):
    return EBirdObservation(obs_id=f"b{i}", lat=34.5, lng=-120.4, common_name="Wren")


@pytest.fixture
def dashboard(make_dashboard):
    d = make_dashboard({FEATURE_URL: {"drawingInfo": {"renderer": unique_value_renderer()}}})
    d.search.strategies[SourceName.INATURALIST] = AsyncMock(return_value=([inat(1), inat(2)], SRC))
    d.search.strategies[SourceName.EBIRD] = AsyncMock(return_value=([bird(1)], SRC))
    return d


class TestSearchReset:

    def test_switching_source_clears_previous_state(self, dashboard, surface, make_item):
        async def scenario():
            await dashboard.search.search(SearchFilters(source=SourceName.INATURALIST))
            await dashboard.layers.activate(make_item())
            await dashboard.highlights.highlight(1)
            await dashboard.search.search(SearchFilters(source=SourceName.EBIRD))

        run(scenario())
        results = dashboard.search.results
        assert results.inaturalist == []
        assert [b.obs_id for b in results.ebird] == ["b1"]
        assert surface.graphics("inaturalist-observations") == []
        assert len(surface.graphics("ebird-observations")) == 1
        assert surface.layers == {}
        assert dashboard.layers.active_ids == set()
        assert dashboard.layers.state("fires").status == LayerStatus.INACTIVE
        assert surface.highlighted == []
        dashboard.search.strategies[SourceName.INATURALIST].assert_awaited_once()
        dashboard.search.strategies[SourceName.EBIRD].assert_awaited_once()

    def test_filters_snapshot(self, dashboard):
        filters = SearchFilters(source=SourceName.EBIRD, taxon_categories=["Aves"])
        run(dashboard.search.search(filters))
        filters.taxon_categories.append("Plantae")
        assert dashboard.search.last_searched_filters.taxon_categories == ["Aves"]

    def test_search_resets_timeseries(self, dashboard):
        dashboard.timeseries.published[4] = []
        run(dashboard.search.search(SearchFilters(source=SourceName.EBIRD)))
        assert dashboard.timeseries.published == {}


class TestSearchRaces:

    def test_superseded_search_is_dropped(self, dashboard):
        async def slow_inat(filters):
            await asyncio.sleep(0.05)
            return [inat(1)], SRC

        dashboard.search.strategies[SourceName.INATURALIST] = slow_inat

        async def scenario():
            first = asyncio.ensure_future(dashboard.search.search(SearchFilters(source=SourceName.INATURALIST)))
            await asyncio.sleep(0.01)
            await dashboard.search.search(SearchFilters(source=SourceName.EBIRD))
            await first

        run(scenario())
        assert dashboard.search.results.inaturalist == []
        assert len(dashboard.search.results.ebird) == 1
        assert dashboard.search.loading == {}

    def test_loading_flag_events(self, dashboard, bus):
        run(dashboard.search.search(SearchFilters(source=SourceName.EBIRD)))
        flags = [(e["source"], e["is_loading"]) for e in bus.events(events.SEARCH_LOADING_CHANGE)]
        assert flags == [("eBird", True), ("eBird", False)]

    def test_failure_clears_loading(self, dashboard):
        dashboard.search.strategies[SourceName.EBIRD] = AsyncMock(side_effect=NetworkFailure("down"))
        with pytest.raises(NetworkFailure):
            run(dashboard.search.search(SearchFilters(source=SourceName.EBIRD)))
        assert dashboard.search.loading == {}
        assert dashboard.search.results.ebird == []


class TestStrategies:

    def test_catalog_results_are_registered(self, dashboard):
        item = CatalogItem(id="fires", source_url=FEATURE_URL)
        dashboard.search.strategies[SourceName.TNC_ARCGIS] = AsyncMock(return_value=([item], SRC))
        run(dashboard.search.search(SearchFilters(source=SourceName.TNC_ARCGIS)))
        assert dashboard.layers.items["fires"] is item
        assert dashboard.search.results.counts()["catalog"] == 1

    def test_default_strategy_calls_service(self, dashboard, monkeypatch):
        fake = AsyncMock(return_value=([], SRC))
        monkeypatch.setattr("fieldmap.services.calflora.query_plants", fake)
        filters = SearchFilters(source=SourceName.CALFLORA, start_date="2024-01-01", end_date="2024-12-31",
                                spatial_filter="preserve-only")
        run(dashboard.search.search(filters))
        fake.assert_awaited_once_with(start_date="2024-01-01", end_date="2024-12-31",
                                      search_mode="preserve-only", custom_polygon=None, max_results=1000)

    def test_dendra_stations_filtered_by_extent(self, monkeypatch):
        inside = DendraStation(id=1, name="Ridge", x=-120.45, y=34.5)
        outside = DendraStation(id=2, name="Far", x=-119.0, y=34.0)
        monkeypatch.setattr("fieldmap.services.dendra.fetch_stations", AsyncMock(return_value=[inside, outside]))
        stations, _ = run(search_dendra(SearchFilters(source=SourceName.DENDRA, spatial_filter="preserve-only")))
        assert [s.id for s in stations] == [1]

    def test_graphics_use_lon_lat(self):
        g = to_graphic(SourceName.EBIRD, bird(3))
        assert (g.lon, g.lat) == (-120.4, 34.5)
        assert g.attributes["obs_id"] == "b3"
