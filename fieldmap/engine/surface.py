# fieldmap/engine/surface.py
"""
The map the engine draws on. Only the layer manager adds/removes layers and
publishes graphics; only the highlight coordinator highlights.

``InMemorySurface`` keeps everything in dictionaries. It backs the headless
API and the tests; ``paint_delay`` simulates time to first paint.
"""
import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..schemas.catalog import ServiceFamily
from ..schemas.common import Graphic
from ..schemas.renderer import ReconstructedRenderer


@dataclass
class LayerHandle:
    slot_id: str
    item_id: str
    url: str
    family: ServiceFamily
    tiled: bool = False
    visible_sub_layers: Optional[List[int]] = None
    opacity: float = 0.8
    min_scale: float = 0
    max_scale: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    renderer: Optional[ReconstructedRenderer] = None
    destroyed: bool = False

    def destroy(self) -> None:
        self.destroyed = True


class HighlightHandle(abc.ABC):
    @abc.abstractmethod
    def remove(self) -> None:
        ...


class RenderSurface(abc.ABC):
    @abc.abstractmethod
    def add_layer(self, handle: LayerHandle) -> None: ...

    @abc.abstractmethod
    def remove_layer(self, handle: LayerHandle) -> None: ...

    @abc.abstractmethod
    async def when_rendered(self, handle: LayerHandle) -> None:
        """Resolves once the layer's first frame is drawn."""

    @abc.abstractmethod
    def set_graphics(self, slot_id: str, graphics: List[Graphic]) -> None: ...

    @abc.abstractmethod
    def clear_graphics(self, slot_id: str) -> None: ...

    @abc.abstractmethod
    def graphics(self, slot_id: str) -> List[Graphic]: ...

    @abc.abstractmethod
    async def when_slot_ready(self, slot_id: str) -> None: ...

    @abc.abstractmethod
    def highlight(self, slot_id: str, graphic: Graphic) -> HighlightHandle: ...


class _MemoryHighlight(HighlightHandle):
    def __init__(self, surface: "InMemorySurface", slot_id: str, graphic: Graphic):
        self._surface = surface
        self.slot_id = slot_id
        self.graphic = graphic
        surface.highlighted.append(self)

    def remove(self) -> None:
        if self in self._surface.highlighted:
            self._surface.highlighted.remove(self)


class InMemorySurface(RenderSurface):
    def __init__(self, paint_delay: float = 0.0):
        self.paint_delay = paint_delay
        self.layers: Dict[str, LayerHandle] = {}
        self.slots: Dict[str, List[Graphic]] = {}
        self.highlighted: List[_MemoryHighlight] = []
        self.paint_failures: set[str] = set()

    def add_layer(self, handle: LayerHandle) -> None:
        if handle.slot_id in self.layers and not self.layers[handle.slot_id].destroyed:
            raise RuntimeError(f"Slot {handle.slot_id} already holds a live layer")
        self.layers[handle.slot_id] = handle

    def remove_layer(self, handle: LayerHandle) -> None:
        if self.layers.get(handle.slot_id) is handle:
            del self.layers[handle.slot_id]

    async def when_rendered(self, handle: LayerHandle) -> None:
        if self.paint_delay:
            await asyncio.sleep(self.paint_delay)
        if handle.slot_id in self.paint_failures:
            raise RuntimeError(f"Layer {handle.slot_id} failed to draw")

    def set_graphics(self, slot_id: str, graphics: List[Graphic]) -> None:
        self.slots[slot_id] = list(graphics)

    def clear_graphics(self, slot_id: str) -> None:
        self.slots.pop(slot_id, None)

    def graphics(self, slot_id: str) -> List[Graphic]:
        return self.slots.get(slot_id, [])

    async def when_slot_ready(self, slot_id: str) -> None:
        await asyncio.sleep(0)

    def highlight(self, slot_id: str, graphic: Graphic) -> HighlightHandle:
        return _MemoryHighlight(self, slot_id, graphic)

    def highlighted_ids(self, attribute: str = "id") -> List[Any]:
        return [h.graphic.attributes.get(attribute) for h in self.highlighted]
