# fieldmap/engine/highlight.py
"""
Serialized highlight / clear requests.

Every request waits for the previous one to settle before touching the
surface, and a newer request makes older ones stale, so after
``highlight(X); highlight(Y)`` only Y is highlighted.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..core.config import settings
from ..schemas.common import Graphic
from . import events
from .events import EventBus
from .race import RaceTokenGuard
from .surface import HighlightHandle, RenderSurface

logger = logging.getLogger(__name__)

# (slot id, attribute holding the observation id)
OBSERVATION_SLOTS = (
    ("inaturalist-observations", "id"),
    ("tnc-inaturalist-observations", "observation_id"),
    ("ebird-observations", "obs_id"),
    ("calflora-observations", "id"),
    ("dendra-stations", "id"),
)

_KEY = "highlight"


@dataclass
class HighlightSession:
    observation_id: Any = None
    slot_id: Optional[str] = None
    handle: Optional[HighlightHandle] = None


class HighlightCoordinator:
    def __init__(
        self,
        surface: RenderSurface,
        bus: Optional[EventBus] = None,
        guard: Optional[RaceTokenGuard] = None,
        settle: float = settings.highlight_settle_sec,
        slots: Sequence[tuple[str, str]] = OBSERVATION_SLOTS,
    ):
        self.surface = surface
        self.bus = bus or EventBus()
        self.guard = guard or RaceTokenGuard()
        self.settle = settle
        self.slots = tuple(slots)
        self.session = HighlightSession()
        self._tail: Optional[asyncio.Future] = None

    @property
    def in_flight(self) -> bool:
        return self._tail is not None and not self._tail.done()

    def find_graphic(self, observation_id: Any) -> Optional[tuple[str, Graphic]]:
        for slot_id, attribute in self.slots:
            for graphic in self.surface.graphics(slot_id):
                value = graphic.attributes.get(attribute)
                if value == observation_id or (value is not None and str(value) == str(observation_id)):
                    return slot_id, graphic
        return None

    def _remove_current(self) -> None:
        if self.session.handle is not None:
            self.session.handle.remove()
        self.session = HighlightSession()

    async def _after_previous(self, previous: Optional[asyncio.Future]) -> None:
        if previous is not None and not previous.done():
            # asyncio.wait never raises the previous operation's error
            await asyncio.wait([previous])

    def _chain(self, coro) -> asyncio.Future:
        op = asyncio.ensure_future(coro)
        self._tail = op
        return op

    async def highlight(self, observation_id: Any) -> bool:
        """True when the feature ended up highlighted by this call."""
        token = self.guard.issue(_KEY)
        return await self._chain(self._highlight(observation_id, token, self._tail))

    async def _highlight(self, observation_id: Any, token: int, previous: Optional[asyncio.Future]) -> bool:
        await self._after_previous(previous)
        self._remove_current()
        if not self.guard.is_current(_KEY, token):
            return False

        found = self.find_graphic(observation_id)
        if found is None:
            logger.warning("Observation %s is not on the map (not drawn yet or from another source)", observation_id)
            return False
        slot_id, graphic = found

        await self.surface.when_slot_ready(slot_id)
        if self.settle:
            await asyncio.sleep(self.settle)
        if not self.guard.is_current(_KEY, token):
            logger.debug("Highlight of %s superseded", observation_id)
            return False

        handle = self.surface.highlight(slot_id, graphic)
        self.session = HighlightSession(observation_id=observation_id, slot_id=slot_id, handle=handle)
        self.bus.emit(events.HIGHLIGHT_CHANGE, observation_id=observation_id, slot_id=slot_id)
        return True

    async def clear_highlight(self) -> None:
        self.guard.issue(_KEY)
        await self._chain(self._clear(self._tail))

    async def _clear(self, previous: Optional[asyncio.Future]) -> None:
        await self._after_previous(previous)
        had = self.session.handle is not None
        self._remove_current()
        if had:
            self.bus.emit(events.HIGHLIGHT_CHANGE, observation_id=None, slot_id=None)

    def reset(self) -> None:
        """Drop the highlight now; pending requests become stale."""
        self.guard.invalidate(_KEY)
        self._remove_current()
