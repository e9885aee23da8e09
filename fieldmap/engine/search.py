# fieldmap/engine/search.py
"""
Entry point for user searches.

``search`` clears every per-source result, layer and selection first, then
runs exactly one source strategy. A newer search makes the older one stale:
its results are never committed and it never touches the loading flags.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import settings
from ..schemas.common import DataSource, Graphic
from ..schemas.observations import SearchFilters, SearchResults, SourceName
from ..services import calflora, catalog, dendra, ebird, inaturalist, tnc_observations
from ..utils.geo import extent_for
from . import events
from .events import EventBus
from .highlight import HighlightCoordinator
from .layers import LayerLifecycleManager
from .race import RaceTokenGuard
from .timeseries import PhasedTimeSeriesLoader

logger = logging.getLogger(__name__)

_KEY = "search"

# source -> (result field, observation slot on the surface)
RESULT_TARGETS: Dict[SourceName, tuple[str, Optional[str]]] = {
    SourceName.INATURALIST: ("inaturalist", "inaturalist-observations"),
    SourceName.TNC_INATURALIST: ("tnc_inaturalist", "tnc-inaturalist-observations"),
    SourceName.EBIRD: ("ebird", "ebird-observations"),
    SourceName.CALFLORA: ("calflora", "calflora-observations"),
    SourceName.DENDRA: ("dendra", "dendra-stations"),
    SourceName.TNC_ARCGIS: ("catalog", None),
}

Strategy = Callable[[SearchFilters], Awaitable[tuple[List[Any], DataSource]]]


# ---------- strategies ----------
async def search_inaturalist(f: SearchFilters):
    return await inaturalist.get_recent_observations(
        start_date=f.start_date,
        end_date=f.end_date,
        max_results=f.max_results or 500,
        quality_grade=f.quality_grade,
        iconic_taxa=f.taxon_categories or None,
    )


async def search_tnc_inaturalist(f: SearchFilters):
    return await tnc_observations.query_observations(
        taxon_categories=f.taxon_categories,
        start_date=f.start_date,
        end_date=f.end_date,
        search_mode=f.spatial_filter,
        custom_polygon=f.custom_polygon,
        max_results=f.max_results or 10000,
    )


async def search_ebird(f: SearchFilters):
    return await ebird.query_observations(
        start_date=f.start_date,
        end_date=f.end_date,
        search_mode=f.spatial_filter,
        custom_polygon=f.custom_polygon,
        max_results=f.max_results or 2000,
    )


async def search_calflora(f: SearchFilters):
    return await calflora.query_plants(
        start_date=f.start_date,
        end_date=f.end_date,
        search_mode=f.spatial_filter,
        custom_polygon=f.custom_polygon,
        max_results=f.max_results or 1000,
    )


async def search_dendra(f: SearchFilters):
    stations = await dendra.fetch_stations()
    if f.spatial_filter != "custom":
        extent = extent_for(f.spatial_filter)
        stations = [s for s in stations if extent.contains(s.x, s.y)]
    if f.max_results:
        stations = stations[: f.max_results]
    return stations, DataSource(name="Dendra stations", url=settings.dendra_base, note=f"{len(stations)} stations")


async def search_catalog(f: SearchFilters):
    items, source = await catalog.search_items(keyword=f.keyword)
    if f.max_results:
        items = items[: f.max_results]
    return items, source


async def count_tnc_inaturalist(f: SearchFilters) -> int:
    return await tnc_observations.query_observations_count(
        taxon_categories=f.taxon_categories,
        start_date=f.start_date,
        end_date=f.end_date,
        search_mode=f.spatial_filter,
        custom_polygon=f.custom_polygon,
    )


async def count_ebird(f: SearchFilters) -> int:
    return await ebird.query_observations_count(
        start_date=f.start_date,
        end_date=f.end_date,
        search_mode=f.spatial_filter,
        custom_polygon=f.custom_polygon,
    )


# sources whose services answer count-only queries
COUNTERS: Dict[SourceName, Callable[[SearchFilters], Awaitable[int]]] = {
    SourceName.TNC_INATURALIST: count_tnc_inaturalist,
    SourceName.EBIRD: count_ebird,
}


DEFAULT_STRATEGIES: Dict[SourceName, Strategy] = {
    SourceName.INATURALIST: search_inaturalist,
    SourceName.TNC_INATURALIST: search_tnc_inaturalist,
    SourceName.EBIRD: search_ebird,
    SourceName.CALFLORA: search_calflora,
    SourceName.DENDRA: search_dendra,
    SourceName.TNC_ARCGIS: search_catalog,
}


def to_graphic(source: SourceName, record: Any) -> Optional[Graphic]:
    if source == SourceName.DENDRA:
        return Graphic(attributes=record.model_dump(), lon=record.x, lat=record.y)
    if source == SourceName.TNC_ARCGIS:
        return None
    obs = record.as_observation()
    return Graphic(attributes=record.model_dump(mode="json", exclude={"photos", "attributes"}),
                   lon=obs.coordinates[0], lat=obs.coordinates[1])


class SearchOrchestrator:
    def __init__(
        self,
        layers: LayerLifecycleManager,
        highlights: HighlightCoordinator,
        timeseries: PhasedTimeSeriesLoader,
        bus: Optional[EventBus] = None,
        guard: Optional[RaceTokenGuard] = None,
        strategies: Optional[Dict[SourceName, Strategy]] = None,
    ):
        self.layers = layers
        self.highlights = highlights
        self.timeseries = timeseries
        self.bus = bus or EventBus()
        self.guard = guard or RaceTokenGuard()
        self.strategies = {**DEFAULT_STRATEGIES, **(strategies or {})}
        self.results = SearchResults()
        self.loading: Dict[SourceName, bool] = {}
        self.last_searched_filters: Optional[SearchFilters] = None

    def _set_loading(self, source: SourceName, value: bool) -> None:
        if self.loading.get(source, False) == value:
            return
        if value:
            self.loading[source] = True
        else:
            self.loading.pop(source, None)
        self.bus.emit(events.SEARCH_LOADING_CHANGE, source=source.value, is_loading=value)

    def reset(self) -> None:
        """Synchronous, so nothing can observe a half-cleared state."""
        self.results = SearchResults()
        self.layers.reset()
        self.highlights.reset()
        self.timeseries.reset()
        for source in list(self.loading):
            self._set_loading(source, False)

    async def search(self, filters: SearchFilters) -> SearchResults:
        self.reset()
        self.last_searched_filters = filters.model_copy(deep=True)
        token = self.guard.issue(_KEY)
        source = filters.source
        strategy = self.strategies[source]

        self._set_loading(source, True)
        try:
            records, data_source = await strategy(filters)
        finally:
            if self.guard.is_current(_KEY, token):
                self._set_loading(source, False)
        if not self.guard.is_current(_KEY, token):
            logger.debug("Dropping %s results of a superseded search", source.value)
            return self.results

        field_name, slot_id = RESULT_TARGETS[source]
        setattr(self.results, field_name, records)
        self.results.sources = [data_source]
        if source == SourceName.TNC_ARCGIS:
            self.layers.register(records)
        elif slot_id:
            graphics = [g for g in (to_graphic(source, r) for r in records) if g is not None]
            self.layers.show_graphics(slot_id, graphics)
        logger.info("%s search returned %d records", source.value, len(records))
        return self.results
