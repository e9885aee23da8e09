# fieldmap/engine/layers.py
"""
Layer lifecycle: the single owner of the layers on the render surface.

Per item:  inactive -> loading -> active
           active   -> reloading -> active      (sub-layer change)
           loading/reloading -> same state       (sub-layer change restarts the build)
           any      -> error                     (construction failed)
           any      -> inactive                  (deactivate, or the load was cancelled)

Construction is a metadata load bounded by ``load_timeout``. The item only
becomes active after the surface reports its first frame, so the loading
indicator stays up until pixels are visible.
"""
import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from ..core.config import settings
from ..core.errors import FieldMapError, LoadTimeout, UnknownServiceFamily
from ..schemas.catalog import (
    CatalogItem,
    ImageLoadingState,
    LayerLoadError,
    LayerRuntimeState,
    LayerStatus,
    ServiceFamily,
    SubLayerInfo,
    UIPattern,
)
from ..schemas.common import Graphic
from ..schemas.renderer import ReconstructedRenderer
from ..services import catalog
from ..services.arcgis import fetch_service_json
from . import events
from .events import EventBus
from .race import RaceTokenGuard
from .renderer import SampleFetcher, reconstruct_from_metadata
from .surface import LayerHandle, RenderSurface

logger = logging.getLogger(__name__)

_LAYER_INDEX = re.compile(r"/(\d+)/?$")

LEGEND_FAMILIES = {ServiceFamily.POINT_QUERY, ServiceFamily.DYNAMIC_MAP, ServiceFamily.RASTER_IMAGE}


def detect_family(url: str) -> tuple[ServiceFamily, bool]:
    """(family, tiled) from the service URL."""
    if "/SceneServer" in url:
        return ServiceFamily.SCENE, True
    if "/StreamServer" in url:
        return ServiceFamily.STREAM, False
    if "/VectorTileServer" in url:
        return ServiceFamily.VECTOR_TILE, True
    if "/ImageServer" in url:
        return ServiceFamily.RASTER_IMAGE, "tiledimageservices" in url.lower()
    if "/MapServer" in url:
        return ServiceFamily.DYNAMIC_MAP, False
    if "/FeatureServer" in url:
        return ServiceFamily.POINT_QUERY, False
    raise UnknownServiceFamily(url)


def split_layer_url(url: str) -> tuple[str, Optional[int]]:
    """``.../FeatureServer/3`` -> (``.../FeatureServer``, 3)."""
    m = _LAYER_INDEX.search(url)
    if not m:
        return url.rstrip("/"), None
    return url[: m.start()], int(m.group(1))


def slot_id_for(item_id: str) -> str:
    return f"tnc-layer-{item_id}"


class LayerLifecycleManager:
    def __init__(
        self,
        surface: RenderSurface,
        bus: Optional[EventBus] = None,
        guard: Optional[RaceTokenGuard] = None,
        load_timeout: float = settings.layer_load_timeout_sec,
        default_opacity: float = settings.default_layer_opacity / 100,
        slow_warning_after: float = settings.image_slow_warning_sec,
        timed_out_after: float = settings.image_timeout_warning_sec,
        fetch_metadata: Optional[Callable[..., Awaitable[dict]]] = None,
        fetch_legend: Optional[Callable[..., Awaitable]] = None,
        sample_values: Optional[SampleFetcher] = None,
    ):
        self.surface = surface
        self.bus = bus or EventBus()
        self.guard = guard or RaceTokenGuard()
        self.load_timeout = load_timeout
        self.default_opacity = default_opacity
        self.slow_warning_after = slow_warning_after
        self.timed_out_after = timed_out_after
        self._fetch_metadata = fetch_metadata
        self._fetch_legend = fetch_legend
        self._sample_values = sample_values

        self.items: Dict[str, CatalogItem] = {}
        self.states: Dict[str, LayerRuntimeState] = {}
        self.active_ids: set[str] = set()
        self.loading_ids: set[str] = set()
        self.errors: Dict[str, LayerLoadError] = {}
        self.image_loading: Dict[str, ImageLoadingState] = {}
        self._handles: Dict[str, LayerHandle] = {}
        self._timers: Dict[str, List[asyncio.TimerHandle]] = {}
        self._graphic_slots: set[str] = set()

    # ---------- bookkeeping ----------
    def state(self, item_id: str) -> LayerRuntimeState:
        if item_id not in self.states:
            self.states[item_id] = LayerRuntimeState(item_id=item_id, opacity=self.default_opacity)
        return self.states[item_id]

    def handle(self, item_id: str) -> Optional[LayerHandle]:
        return self._handles.get(item_id)

    def register(self, items: Iterable[CatalogItem]) -> None:
        for item in items:
            self.items[item.id] = item

    def _key(self, item_id: str) -> tuple:
        return ("layer", item_id)

    def _set_loading(self, item_id: str, loading: bool) -> None:
        was_loading = bool(self.loading_ids)
        if loading:
            self.loading_ids.add(item_id)
        else:
            self.loading_ids.discard(item_id)
        if was_loading != bool(self.loading_ids):
            self.bus.emit(events.LOADING_CHANGE, is_loading=bool(self.loading_ids))

    def _clear_timers(self, item_id: str) -> None:
        for timer in self._timers.pop(item_id, []):
            timer.cancel()
        state = self.image_loading.pop(item_id, None)
        if state is not None and state.is_loading:
            state.is_loading = False
            self.bus.emit(events.IMAGE_LOADING_CHANGE, item_id=item_id, state=state.model_dump())

    def _start_image_timers(self, item: CatalogItem, warning: Optional[str]) -> None:
        state = ImageLoadingState(item_id=item.id, layer_title=item.title, warning=warning)
        self.image_loading[item.id] = state
        self.bus.emit(events.IMAGE_LOADING_CHANGE, item_id=item.id, state=state.model_dump())

        def flag(attr: str):
            if self.image_loading.get(item.id) is state:
                setattr(state, attr, True)
                self.bus.emit(events.IMAGE_LOADING_CHANGE, item_id=item.id, state=state.model_dump())

        loop = asyncio.get_running_loop()
        self._timers[item.id] = [
            loop.call_later(self.slow_warning_after, flag, "show_slow_warning"),
            loop.call_later(self.timed_out_after, flag, "has_timed_out"),
        ]

    # ---------- construction ----------
    async def _metadata(self, url: str, timeout: Optional[float] = None) -> dict:
        fetch = self._fetch_metadata or fetch_service_json
        return await fetch(url, timeout=timeout)

    async def _resolve_point_query_url(self, item: CatalogItem) -> str:
        service_url, index = split_layer_url(item.source_url)
        if index is not None:
            chosen = item.selected_sub_layer_id if item.selected_sub_layer_id is not None else index
            return f"{service_url}/{chosen}"
        if item.available_sub_layers:
            chosen = item.selected_sub_layer_id if item.selected_sub_layer_id is not None else 0
            return f"{service_url}/{chosen}"
        try:
            meta = await self._metadata(service_url)
        except FieldMapError as ex:
            logger.warning("Could not list layers of %s, using the service URL: %s", service_url, ex)
            return service_url
        layers = [l for l in meta.get("layers") or [] if "id" in l]
        if not layers:
            return service_url
        item.available_sub_layers = [SubLayerInfo(id=l["id"], name=l.get("name") or f"Layer {l['id']}") for l in layers]
        ids = [l["id"] for l in layers]
        chosen = item.selected_sub_layer_id if item.selected_sub_layer_id in ids else ids[0]
        item.selected_sub_layer_id = chosen
        return f"{service_url}/{chosen}"

    async def _construct(self, item: CatalogItem) -> LayerHandle:
        family, tiled = detect_family(item.source_url)
        if item.service_family is not None and item.service_family != family:
            logger.debug("%s declared %s but its URL says %s", item.id, item.service_family, family)

        url = item.source_url.rstrip("/")
        if family == ServiceFamily.POINT_QUERY:
            url = await self._resolve_point_query_url(item)
        metadata = await self._metadata(url)

        visible = None
        if family == ServiceFamily.DYNAMIC_MAP:
            if not item.available_sub_layers and metadata.get("layers"):
                item.available_sub_layers = [
                    SubLayerInfo(id=l["id"], name=l.get("name") or f"Layer {l['id']}")
                    for l in metadata["layers"] if "id" in l
                ]
            if item.selected_sub_layer_id is not None and len(item.available_sub_layers) > 1:
                visible = [item.selected_sub_layer_id]

        return LayerHandle(
            slot_id=slot_id_for(item.id),
            item_id=item.id,
            url=url,
            family=family,
            tiled=tiled,
            visible_sub_layers=visible,
            opacity=self.state(item.id).opacity,
            metadata=metadata,
        )

    async def _reconstruct_renderer(self, handle: LayerHandle) -> Optional[ReconstructedRenderer]:
        return await reconstruct_from_metadata(handle.metadata, handle.url, sample=self._sample_values)

    async def _fetch_legend_best_effort(self, item: CatalogItem, handle: LayerHandle) -> None:
        if handle.family not in LEGEND_FAMILIES:
            return
        service_url, index = split_layer_url(handle.url)
        if handle.family == ServiceFamily.RASTER_IMAGE:
            service_url, index = handle.url, 0
        layer_id = item.selected_sub_layer_id if handle.family == ServiceFamily.DYNAMIC_MAP else index
        fetch = self._fetch_legend or catalog.fetch_legend_info
        try:
            legend = await fetch(service_url, layer_id if layer_id is not None else 0)
        except Exception as ex:
            logger.debug("Legend unavailable for %s: %s", item.id, ex)
            return
        if legend is None:
            return
        item.legend_data = legend
        self.bus.emit(events.LEGEND_DATA_FETCHED, item_id=item.id, legend=legend.model_dump())

    # ---------- operations ----------
    async def activate(self, item: CatalogItem) -> LayerRuntimeState:
        self.items.setdefault(item.id, item)
        state = self.state(item.id)
        if state.status in (LayerStatus.ACTIVE, LayerStatus.LOADING, LayerStatus.RELOADING):
            return state
        if item.ui_pattern != UIPattern.MAP_LAYER:
            logger.info("%s is a %s item, nothing to draw", item.title or item.id, item.ui_pattern.value)
            return state

        self.active_ids.add(item.id)
        self.errors.pop(item.id, None)
        state.status = LayerStatus.LOADING
        state.last_error = None
        self._set_loading(item.id, True)
        await self._load(item, self.guard.issue(self._key(item.id)))
        return state

    async def _load(self, item: CatalogItem, token: int) -> None:
        key = self._key(item.id)
        state = self.state(item.id)
        first_activation = state.activations == 0
        try:
            try:
                handle = await asyncio.wait_for(self._construct(item), timeout=self.load_timeout)
            except asyncio.TimeoutError:
                raise LoadTimeout(self.load_timeout) from None
            if not self.guard.is_current(key, token):
                logger.debug("Dropping stale construction of %s", item.id)
                return

            # upstream zoom limits would hide data the user asked for
            handle.min_scale = 0
            handle.max_scale = 0

            if handle.family == ServiceFamily.POINT_QUERY:
                handle.renderer = await self._reconstruct_renderer(handle)
                if not self.guard.is_current(key, token):
                    return
                alpha = handle.renderer.detected_alpha if handle.renderer else None
                if first_activation and not state.opacity_set_by_user and alpha is not None:
                    state.opacity = round(alpha, 2)
                    handle.opacity = state.opacity
                    self.bus.emit(events.OPACITY_CHANGE, item_id=item.id, percent=round(alpha * 100))

            if handle.family == ServiceFamily.RASTER_IMAGE and not handle.tiled:
                self._start_image_timers(item, catalog.image_performance_warning(handle.metadata))

            self.surface.add_layer(handle)
            self._handles[item.id] = handle

            await self._fetch_legend_best_effort(item, handle)
            if not self.guard.is_current(key, token):
                return
            try:
                await self.surface.when_rendered(handle)
            except Exception as ex:
                logger.warning("%s reported a draw error, marking it loaded: %s", item.title or item.id, ex)
        except asyncio.CancelledError:
            if self.guard.is_current(key, token):
                logger.info("Load of %s was cancelled", item.title or item.id)
                self.deactivate(item.id)
            raise
        except Exception as ex:
            if self.guard.is_current(key, token):
                self._fail(item, ex if isinstance(ex, FieldMapError) else FieldMapError(str(ex) or None))
            return

        if not self.guard.is_current(key, token):
            return
        self._clear_timers(item.id)
        state.status = LayerStatus.ACTIVE
        state.activations += 1
        self._set_loading(item.id, False)
        self.bus.emit(events.LAYER_LOAD_COMPLETE, item_id=item.id)

    def _fail(self, item: CatalogItem, error: FieldMapError) -> None:
        logger.warning("Layer %s failed: %s", item.title or item.id, error.user_message)
        state = self.state(item.id)
        self._clear_timers(item.id)
        handle = self._handles.pop(item.id, None)
        if handle is not None:
            self.surface.remove_layer(handle)
            handle.destroy()
        state.status = LayerStatus.ERROR
        state.last_error = error.user_message
        self._set_loading(item.id, False)
        banner = LayerLoadError(item_id=item.id, layer_title=item.title or item.id, error_message=error.user_message)
        self.errors[item.id] = banner
        self.bus.emit(events.LAYER_ERROR_BANNER, **banner.model_dump())
        self.bus.emit(events.LAYER_LOAD_ERROR, item_id=item.id)

    def deactivate(self, item_id: str) -> None:
        state = self.states.get(item_id)
        if state is None or state.status == LayerStatus.INACTIVE:
            return
        self.guard.invalidate(self._key(item_id))
        handle = self._handles.pop(item_id, None)
        if handle is not None:
            self.surface.remove_layer(handle)
            handle.destroy()
        self._clear_timers(item_id)
        self.active_ids.discard(item_id)
        self.errors.pop(item_id, None)
        state.status = LayerStatus.INACTIVE
        self._set_loading(item_id, False)

    def set_opacity(self, item_id: str, value: float) -> LayerRuntimeState:
        if not 0.0 <= value <= 1.0:
            raise ValueError("opacity must be within [0, 1]")
        state = self.state(item_id)
        state.opacity = value
        state.opacity_set_by_user = True
        handle = self._handles.get(item_id)
        if handle is not None:
            handle.opacity = value
        self.bus.emit(events.OPACITY_CHANGE, item_id=item_id, percent=round(value * 100))
        return state

    async def select_sub_layer(self, item_id: str, sub_layer_id: int) -> LayerRuntimeState:
        """The affected services cannot swap sub-layers in place: destroy, then rebuild."""
        item = self.items[item_id]
        item.selected_sub_layer_id = sub_layer_id
        state = self.state(item_id)
        if state.status not in (LayerStatus.ACTIVE, LayerStatus.LOADING, LayerStatus.RELOADING):
            return state

        # a build already in flight resolved the old sub-layer; supersede it
        token = self.guard.issue(self._key(item_id))
        if state.status == LayerStatus.ACTIVE:
            state.status = LayerStatus.RELOADING
        handle = self._handles.pop(item_id, None)
        if handle is not None:
            self.surface.remove_layer(handle)
            handle.destroy()
        self._clear_timers(item_id)
        await self._load(item, token)
        return state

    def dismiss_error(self, item_id: str) -> None:
        self.errors.pop(item_id, None)

    async def sync(self, items: Iterable[CatalogItem], active_ids: Iterable[str]) -> None:
        """Bring the surface in line with ``active_ids``; one failure never blocks the rest."""
        self.register(items)
        wanted = set(active_ids)
        for item_id in sorted(self.active_ids - wanted):
            self.deactivate(item_id)
        for item_id in sorted(wanted):
            item = self.items.get(item_id)
            if item is None:
                logger.warning("Unknown catalog item %s", item_id)
                continue
            await self.activate(item)

    # ---------- observation graphics ----------
    def show_graphics(self, slot_id: str, graphics: List[Graphic]) -> None:
        self._graphic_slots.add(slot_id)
        self.surface.set_graphics(slot_id, graphics)

    def clear_graphics(self, slot_id: Optional[str] = None) -> None:
        slots = [slot_id] if slot_id else list(self._graphic_slots)
        for slot in slots:
            self.surface.clear_graphics(slot)
            self._graphic_slots.discard(slot)

    def reset(self) -> None:
        for item_id in list(self.states):
            self.deactivate(item_id)
        self.active_ids.clear()
        self.errors.clear()
        self.clear_graphics()
