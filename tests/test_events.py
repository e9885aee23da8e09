# ============================================================================
# EVENT BUS TESTS
# ============================================================================
import logging

import pytest

from conftest import run
from fieldmap.engine.events import EventBus
from fieldmap.engine.surface import InMemorySurface
from fieldmap.engine.dashboard import Dashboard
from fieldmap.schemas.common import Graphic


class TestEventBus:

    def test_subscribe_and_emit(self):
        bus = EventBus()
        seen = []
        bus.subscribe("opacity_change", lambda **p: seen.append(p))
        bus.emit("opacity_change", item_id="a", percent=40)
        assert seen == [{"item_id": "a", "percent": 40}]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe("x", lambda **p: seen.append(p))
        unsubscribe()
        bus.emit("x")
        assert seen == []

    def test_handler_errors_do_not_propagate(self, caplog):
        bus = EventBus()
        later = []

        def broken(**payload):
            raise RuntimeError("ui went away")

        bus.subscribe("x", broken)
        bus.subscribe("x", lambda **p: later.append(p))
        with caplog.at_level(logging.ERROR, logger="fieldmap.engine.events"):
            bus.emit("x", n=1)
        assert later == [{"n": 1}]
        assert "Handler for x failed" in caplog.text

    def test_history_is_bounded(self):
        bus = EventBus(history=3)
        for i in range(5):
            bus.emit("tick", i=i)
        assert [e["i"] for e in bus.events("tick")] == [2, 3, 4]

    def test_unknown_action(self):
        with pytest.raises(KeyError):
            EventBus().invoke_action("missing")


class TestDashboardActions:

    def test_popup_action_highlights(self):
        surface = InMemorySurface()
        dashboard = Dashboard.create(surface)
        dashboard.highlights.settle = 0
        surface.set_graphics("calflora-observations", [Graphic(attributes={"id": "p1"}, lon=-120.4, lat=34.5)])

        assert run(dashboard.bus.invoke_action("highlight_observation", "p1")) is True
        assert surface.highlighted_ids() == ["p1"]
