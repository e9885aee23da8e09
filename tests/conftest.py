# ============================================================================
# SHARED FIXTURES
# ============================================================================
"""
Engine fixtures. Nothing here touches the network: metadata, legend and
sampling calls are AsyncMocks handed to the components.
"""
import asyncio
from typing import Dict, Optional
from unittest.mock import AsyncMock

import pytest

from fieldmap.core.errors import ServiceIncompatible
from fieldmap.engine.dashboard import Dashboard
from fieldmap.engine.events import EventBus
from fieldmap.engine.highlight import HighlightCoordinator
from fieldmap.engine.layers import LayerLifecycleManager
from fieldmap.engine.race import RaceTokenGuard
from fieldmap.engine.search import SearchOrchestrator
from fieldmap.engine.surface import InMemorySurface
from fieldmap.engine.timeseries import PhasedTimeSeriesLoader
from fieldmap.schemas.catalog import CatalogItem
from fieldmap.schemas.timeseries import Datapoint

FEATURE_URL = "https://example.org/arcgis/rest/services/Fires/FeatureServer/0"
MAP_URL = "https://example.org/arcgis/rest/services/Soils/MapServer"
IMAGE_URL = "https://example.org/arcgis/rest/services/Dem/ImageServer"


def unique_value_renderer(alpha: int = 51) -> dict:
    return {
        "type": "uniqueValue",
        "field1": "fire_year",
        "uniqueValueInfos": [
            {"value": "2020", "label": "2020",
             "symbol": {"type": "esriSFS", "style": "esriSFSSolid", "color": [255, 0, 0, alpha],
                        "outline": {"color": [0, 0, 0, 64], "width": 0.4}}},
            {"value": "2021", "label": "2021",
             "symbol": {"type": "esriSFS", "style": "esriSFSSolid", "color": [0, 0, 255, 255]}},
        ],
    }


def metadata_by_url(table: Dict[str, dict]) -> AsyncMock:
    """AsyncMock(url, timeout=None) answering from ``table``; unknown URLs are 404."""

    async def fetch(url, timeout=None):
        if url in table:
            return table[url]
        raise ServiceIncompatible(404)

    return AsyncMock(side_effect=fetch)


@pytest.fixture
def surface():
    return InMemorySurface()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_item():
    def _make(item_id: str = "fires", url: str = FEATURE_URL, **kwargs) -> CatalogItem:
        return CatalogItem(id=item_id, title=kwargs.pop("title", item_id.title()), source_url=url, **kwargs)
    return _make


@pytest.fixture
def make_manager(surface, bus):
    def _make(metadata: Optional[Dict[str, dict]] = None, **kwargs) -> LayerLifecycleManager:
        kwargs.setdefault("fetch_metadata", metadata_by_url(metadata or {}))
        kwargs.setdefault("fetch_legend", AsyncMock(return_value=None))
        kwargs.setdefault("sample_values", AsyncMock(return_value=["2020", "2021"]))
        return LayerLifecycleManager(surface, bus, RaceTokenGuard(), **kwargs)
    return _make


@pytest.fixture
def make_dashboard(surface, bus, make_manager):
    def _make(metadata: Optional[Dict[str, dict]] = None, fetch_points=None) -> Dashboard:
        layers = make_manager(metadata)
        guard = layers.guard
        highlights = HighlightCoordinator(surface, bus, guard, settle=0)
        timeseries = PhasedTimeSeriesLoader(guard, bus, fetch=fetch_points or AsyncMock(return_value=[]))
        search = SearchOrchestrator(layers, highlights, timeseries, bus, guard)
        return Dashboard(surface, bus, layers, highlights, timeseries, search)
    return _make


def points(*pairs, datastream_id: int = 7):
    return [Datapoint(id=i, timestamp_utc=ts, value=float(ts), datastream_id=datastream_id) for i, ts in pairs]


def run(coro):
    return asyncio.run(coro)
