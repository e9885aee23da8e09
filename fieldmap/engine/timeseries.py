# fieldmap/engine/timeseries.py
"""
Two-phase datastream loading.

Phase ``recent`` fetches the last ``recent_window_days`` so a chart can draw
quickly; phase ``full`` fetches the whole history and is merged into it.
Both phases share one race token per datastream; a newer ``load`` for the
same datastream makes every result of the older one stale.
"""
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..core.config import settings
from ..schemas.timeseries import Datapoint, Phase, SeriesUpdate, TimeSeriesRequest
from ..services import dendra
from . import events
from .events import EventBus
from .race import RaceTokenGuard

logger = logging.getLogger(__name__)

FetchDatapoints = Callable[..., Awaitable[List[Datapoint]]]


def merge_datapoints(recent: List[Datapoint], full: List[Datapoint]) -> List[Datapoint]:
    """Union keyed by id (full history wins), ascending by timestamp."""
    by_id: Dict[int | str, Datapoint] = {p.id: p for p in recent}
    for p in full:
        by_id[p.id] = p
    return sorted(by_id.values(), key=lambda p: p.timestamp_utc)


class PhasedTimeSeriesLoader:
    def __init__(
        self,
        guard: Optional[RaceTokenGuard] = None,
        bus: Optional[EventBus] = None,
        fetch: Optional[FetchDatapoints] = None,
        recent_days: int = settings.recent_window_days,
        page_size: int = settings.timeseries_page_size,
    ):
        self.guard = guard or RaceTokenGuard()
        self.bus = bus or EventBus()
        self._fetch = fetch
        self.recent_days = recent_days
        self.page_size = page_size
        self.published: Dict[int, List[Datapoint]] = {}
        self.loading: Dict[int, TimeSeriesRequest] = {}
        self.recent_done: set[int] = set()

    def _key(self, datastream_id: int) -> tuple:
        return ("timeseries", datastream_id)

    async def _fetch_points(self, datastream_id: int, days_back: Optional[int]) -> List[Datapoint]:
        fetch = self._fetch or dendra.fetch_datapoints
        return await fetch(datastream_id, days_back=days_back, page_size=self.page_size, use_recent_filter=True)

    def _publish(self, datastream_id: int, phase: Phase, points: List[Datapoint], final: bool) -> SeriesUpdate:
        self.published[datastream_id] = points
        update = SeriesUpdate(datastream_id=datastream_id, phase=phase, datapoints=points, final=final)
        self.bus.emit(events.TIMESERIES_UPDATE, datastream_id=datastream_id, phase=phase.value,
                      count=len(points), final=final)
        return update

    def _set_loading(self, datastream_id: int, phase: Optional[Phase], token: int = 0) -> None:
        if phase is None:
            self.loading.pop(datastream_id, None)
        else:
            self.loading[datastream_id] = TimeSeriesRequest(datastream_id=datastream_id, race_token=token, phase=phase)

    async def load(self, datastream_id: int) -> AsyncIterator[SeriesUpdate]:
        """
        Yields at most two updates: the recent window, then the merged full
        history (``final=True``). Stale phases yield nothing. Fetch errors
        propagate after the loading flag is cleared; a failed full phase
        leaves the recent data published.
        """
        key = self._key(datastream_id)
        token = self.guard.issue(key)
        self.recent_done.discard(datastream_id)

        self._set_loading(datastream_id, Phase.RECENT, token)
        try:
            recent = await self._fetch_points(datastream_id, self.recent_days)
        finally:
            if self.guard.is_current(key, token):
                self._set_loading(datastream_id, None)
        if not self.guard.is_current(key, token):
            logger.debug("Discarding stale recent phase for datastream %s", datastream_id)
            return
        self.recent_done.add(datastream_id)
        yield self._publish(datastream_id, Phase.RECENT, recent, final=not recent)
        if not recent:
            return

        if not self.guard.is_current(key, token):
            return
        self._set_loading(datastream_id, Phase.FULL, token)
        try:
            full = await self._fetch_points(datastream_id, None)
        finally:
            if self.guard.is_current(key, token):
                self._set_loading(datastream_id, None)
        if not self.guard.is_current(key, token):
            logger.debug("Discarding stale full phase for datastream %s", datastream_id)
            return
        yield self._publish(datastream_id, Phase.FULL, merge_datapoints(recent, full), final=True)

    async def load_all(self, datastream_id: int) -> List[Datapoint]:
        """Drive ``load`` to completion and return what ended up published."""
        async for _ in self.load(datastream_id):
            pass
        return self.published.get(datastream_id, [])

    def cancel(self, datastream_id: Optional[int] = None) -> None:
        ids = [datastream_id] if datastream_id is not None else list(self.loading)
        for ds in ids:
            self.guard.invalidate(self._key(ds))
            self._set_loading(ds, None)

    def reset(self) -> None:
        self.cancel()
        for ds in list(self.published):
            self.guard.invalidate(self._key(ds))
        self.published.clear()
        self.recent_done.clear()
