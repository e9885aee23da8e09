# fieldmap/engine/events.py
"""
Status callbacks from the engine to whatever UI is attached.

Named actions replace the global hook a generated popup button used to call
back into the app: popups invoke ``bus.invoke_action("open_details", ...)``
on the bus they were created from.
"""
import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

LOADING_CHANGE = "loading_change"
LAYER_LOAD_COMPLETE = "layer_load_complete"
LAYER_LOAD_ERROR = "layer_load_error"
LAYER_ERROR_BANNER = "layer_error_banner"
LEGEND_DATA_FETCHED = "legend_data_fetched"
OPACITY_CHANGE = "opacity_change"
IMAGE_LOADING_CHANGE = "image_loading_change"
HIGHLIGHT_CHANGE = "highlight_change"
TIMESERIES_UPDATE = "timeseries_update"
SEARCH_LOADING_CHANGE = "search_loading_change"

Handler = Callable[..., Any]


class EventBus:
    def __init__(self, history: int = 200):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._actions: Dict[str, Handler] = {}
        self.recent: Deque[dict] = deque(maxlen=history)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        self._handlers[name].append(handler)

        def unsubscribe():
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return unsubscribe

    def emit(self, name: str, **payload) -> None:
        self.recent.append({"event": name, "at": time.time(), **payload})
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(**payload)
            except Exception:
                logger.exception("Handler for %s failed", name)

    def events(self, name: str | None = None) -> List[dict]:
        return [e for e in self.recent if name is None or e["event"] == name]

    def register_action(self, name: str, handler: Handler) -> None:
        self._actions[name] = handler

    def invoke_action(self, name: str, *args, **kwargs) -> Any:
        if name not in self._actions:
            raise KeyError(f"No action registered as {name!r}")
        return self._actions[name](*args, **kwargs)
