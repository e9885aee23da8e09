# fieldmap/engine/dashboard.py
import logging
from typing import Optional

from ..core.config import Settings, settings as default_settings
from .events import EventBus
from .highlight import HighlightCoordinator
from .layers import LayerLifecycleManager
from .race import RaceTokenGuard
from .search import SearchOrchestrator
from .surface import InMemorySurface, RenderSurface
from .timeseries import PhasedTimeSeriesLoader

logger = logging.getLogger(__name__)


class Dashboard:
    """
    One engine instance: a surface, an event bus and the components that
    share them. Everything that used to live in process globals hangs off
    this object.
    """

    def __init__(
        self,
        surface: RenderSurface,
        bus: EventBus,
        layers: LayerLifecycleManager,
        highlights: HighlightCoordinator,
        timeseries: PhasedTimeSeriesLoader,
        search: SearchOrchestrator,
    ):
        self.surface = surface
        self.bus = bus
        self.layers = layers
        self.highlights = highlights
        self.timeseries = timeseries
        self.search = search
        self.bus.register_action("highlight_observation", self.highlights.highlight)
        self.bus.register_action("clear_highlight", self.highlights.clear_highlight)

    @classmethod
    def create(cls, surface: Optional[RenderSurface] = None, cfg: Optional[Settings] = None) -> "Dashboard":
        cfg = cfg or default_settings
        surface = surface or InMemorySurface()
        bus = EventBus()
        guard = RaceTokenGuard()
        layers = LayerLifecycleManager(
            surface,
            bus,
            guard,
            load_timeout=cfg.layer_load_timeout_sec,
            default_opacity=cfg.default_layer_opacity / 100,
            slow_warning_after=cfg.image_slow_warning_sec,
            timed_out_after=cfg.image_timeout_warning_sec,
        )
        highlights = HighlightCoordinator(surface, bus, guard, settle=cfg.highlight_settle_sec)
        timeseries = PhasedTimeSeriesLoader(
            guard, bus, recent_days=cfg.recent_window_days, page_size=cfg.timeseries_page_size
        )
        search = SearchOrchestrator(layers, highlights, timeseries, bus, guard)
        logger.debug("Dashboard created (load timeout %ss)", cfg.layer_load_timeout_sec)
        return cls(surface, bus, layers, highlights, timeseries, search)
