# ============================================================================
# LAYER LIFECYCLE TESTS
# ============================================================================
"""
Covers:
1. Service family detection
2. inactive -> loading -> active, idempotent activate/deactivate
3. Failures: 4xx, timeout, unknown family, cancellation; spinners always cleared
4. Renderer repair and first-activation opacity
5. Sub-layer selection rebuilds the layer, the latest choice wins
6. Image service slow/timeout flags
7. sync() isolates failures
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FEATURE_URL, IMAGE_URL, MAP_URL, metadata_by_url, run, unique_value_renderer
from fieldmap.core.errors import UnknownServiceFamily
from fieldmap.engine import events
from fieldmap.engine.layers import detect_family, split_layer_url
from fieldmap.schemas.catalog import LayerStatus, LegendData, ServiceFamily, UIPattern
from fieldmap.schemas.renderer import PrefixExpression

FEATURE_META = {FEATURE_URL: {"name": "Fires", "drawingInfo": {"renderer": unique_value_renderer(alpha=51)}}}


def slow_metadata(delay: float) -> AsyncMock:
    async def fetch(url, timeout=None):
        await asyncio.sleep(delay)
        return {}
    return AsyncMock(side_effect=fetch)


class TestDetectFamily:

    @pytest.mark.parametrize("url,family,tiled", [
        ("https://h/rest/services/X/SceneServer/layers/0", ServiceFamily.SCENE, True),
        ("https://h/rest/services/X/StreamServer", ServiceFamily.STREAM, False),
        ("https://h/rest/services/X/VectorTileServer", ServiceFamily.VECTOR_TILE, True),
        ("https://h/rest/services/X/ImageServer", ServiceFamily.RASTER_IMAGE, False),
        ("https://tiledimageservices.arcgis.com/a/X/ImageServer", ServiceFamily.RASTER_IMAGE, True),
        ("https://h/rest/services/X/MapServer", ServiceFamily.DYNAMIC_MAP, False),
        ("https://h/rest/services/X/FeatureServer/2", ServiceFamily.POINT_QUERY, False),
    ])
    def test_families(self, url, family, tiled):
        assert detect_family(url) == (family, tiled)

    def test_unknown_family(self):
        with pytest.raises(UnknownServiceFamily):
            detect_family("https://example.org/some/page.html")

    def test_split_layer_url(self):
        assert split_layer_url(FEATURE_URL) == (FEATURE_URL[:-2], 0)
        assert split_layer_url(MAP_URL) == (MAP_URL, None)


class TestActivate:

    def test_activate_reaches_active_after_first_paint(self, make_manager, make_item, surface, bus):
        manager = make_manager(FEATURE_META)
        item = make_item()
        state = run(manager.activate(item))

        assert state.status == LayerStatus.ACTIVE
        assert manager.loading_ids == set()
        assert "fires" in manager.active_ids
        handle = surface.layers["tnc-layer-fires"]
        assert handle.family == ServiceFamily.POINT_QUERY
        assert (handle.min_scale, handle.max_scale) == (0, 0)
        assert [e["is_loading"] for e in bus.events(events.LOADING_CHANGE)] == [True, False]
        assert [e["item_id"] for e in bus.events(events.LAYER_LOAD_COMPLETE)] == ["fires"]

    def test_activate_is_idempotent(self, make_manager, make_item):
        manager = make_manager(FEATURE_META)
        item = make_item()
        run(manager.activate(item))
        run(manager.activate(item))
        assert manager._fetch_metadata.await_count == 1
        assert manager.state("fires").activations == 1

    def test_non_map_items_are_ignored(self, make_manager, make_item, surface):
        manager = make_manager()
        state = run(manager.activate(make_item("doc", ui_pattern=UIPattern.MODAL)))
        assert state.status == LayerStatus.INACTIVE
        assert surface.layers == {}
        assert manager.active_ids == set()

    def test_loading_implies_active_set(self, make_manager, make_item):
        slow = slow_metadata(0.05)
        manager = make_manager(fetch_metadata=slow)
        observed = []

        async def scenario():
            task = asyncio.ensure_future(manager.activate(make_item()))
            await asyncio.sleep(0.01)
            observed.append((manager.state("fires").status, set(manager.active_ids), set(manager.loading_ids)))
            await task

        run(scenario())
        assert observed == [(LayerStatus.LOADING, {"fires"}, {"fires"})]
        assert manager.state("fires").status == LayerStatus.ACTIVE

    def test_draw_error_still_completes(self, make_manager, make_item, surface):
        surface.paint_failures.add("tnc-layer-fires")
        manager = make_manager(FEATURE_META)
        assert run(manager.activate(make_item())).status == LayerStatus.ACTIVE


class TestFailures:

    def test_http_4xx_becomes_error_with_banner(self, make_manager, make_item, surface, bus):
        manager = make_manager({})
        state = run(manager.activate(make_item(title="Retired layer")))

        assert state.status == LayerStatus.ERROR
        assert "retired" in state.last_error
        assert surface.layers == {}
        assert manager.loading_ids == set()
        banner = bus.events(events.LAYER_ERROR_BANNER)[-1]
        assert banner["layer_title"] == "Retired layer"
        assert bus.events(events.LAYER_LOAD_ERROR)[-1]["item_id"] == "fires"
        assert manager.errors["fires"].error_message == state.last_error

    def test_timeout(self, make_manager, make_item, surface):
        slow = slow_metadata(1)
        manager = make_manager(fetch_metadata=slow, load_timeout=0.05)
        state = run(manager.activate(make_item()))

        assert state.status == LayerStatus.ERROR
        assert state.last_error.startswith("Load timeout after 0.05 seconds")
        assert surface.layers == {}
        assert manager.loading_ids == set()

    def test_unknown_family(self, make_manager, make_item):
        manager = make_manager()
        state = run(manager.activate(make_item(url="https://example.org/page.html")))
        assert state.status == LayerStatus.ERROR
        assert "Unsupported service type" in state.last_error

    def test_retry_after_error(self, make_manager, make_item):
        manager = make_manager({})
        item = make_item()
        run(manager.activate(item))
        manager._fetch_metadata = metadata_by_url(FEATURE_META)
        assert run(manager.activate(item)).status == LayerStatus.ACTIVE
        assert "fires" not in manager.errors

    def test_dismiss_error(self, make_manager, make_item):
        manager = make_manager({})
        run(manager.activate(make_item()))
        manager.dismiss_error("fires")
        assert manager.errors == {}


class TestDeactivate:

    def test_deactivate_removes_layer(self, make_manager, make_item, surface):
        manager = make_manager(FEATURE_META)
        run(manager.activate(make_item()))
        handle = surface.layers["tnc-layer-fires"]
        manager.deactivate("fires")

        assert surface.layers == {}
        assert handle.destroyed
        assert manager.state("fires").status == LayerStatus.INACTIVE
        assert manager.active_ids == set()

    def test_deactivate_inactive_is_noop(self, make_manager, bus):
        manager = make_manager()
        manager.deactivate("never-seen")
        assert "never-seen" not in manager.states
        assert bus.events() == []

    def test_deactivate_while_loading_discards_result(self, make_manager, make_item, surface):
        slow = slow_metadata(0.05)
        manager = make_manager(fetch_metadata=slow)

        async def scenario():
            task = asyncio.ensure_future(manager.activate(make_item()))
            await asyncio.sleep(0.01)
            manager.deactivate("fires")
            await task

        run(scenario())
        assert manager.state("fires").status == LayerStatus.INACTIVE
        assert surface.layers == {}
        assert manager.loading_ids == set()

    def test_cancelled_activation_clears_loading(self, make_manager, make_item, surface, bus):
        manager = make_manager(fetch_metadata=slow_metadata(1))
        item = make_item()

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(manager.activate(item), 0.05)
            assert manager.state("fires").status == LayerStatus.INACTIVE
            assert manager.loading_ids == set()
            assert manager.active_ids == set()

            manager._fetch_metadata = metadata_by_url(FEATURE_META)
            return await manager.activate(item)

        state = run(scenario())
        assert state.status == LayerStatus.ACTIVE
        assert "tnc-layer-fires" in surface.layers
        assert bus.events(events.LOADING_CHANGE)[-1]["is_loading"] is False


class TestRendererAndOpacity:

    def test_prefix_renderer_installed(self, make_manager, make_item, surface):
        manager = make_manager(FEATURE_META, sample_values=AsyncMock(return_value=["2020-January 2025"]))
        run(manager.activate(make_item()))
        renderer = surface.layers["tnc-layer-fires"].renderer
        assert isinstance(renderer.strategy, PrefixExpression)

    def test_first_activation_takes_service_alpha(self, make_manager, make_item, bus):
        manager = make_manager(FEATURE_META)
        state = run(manager.activate(make_item()))
        assert state.opacity == pytest.approx(0.2)
        last = bus.events(events.OPACITY_CHANGE)[-1]
        assert (last["item_id"], last["percent"]) == ("fires", 20)

    def test_user_opacity_wins(self, make_manager, make_item, bus):
        manager = make_manager(FEATURE_META)
        manager.set_opacity("fires", 0.6)
        state = run(manager.activate(make_item()))
        assert state.opacity == 0.6
        assert [e["percent"] for e in bus.events(events.OPACITY_CHANGE)] == [60]

    def test_second_activation_keeps_opacity(self, make_manager, make_item):
        manager = make_manager(FEATURE_META)
        item = make_item()
        run(manager.activate(item))
        manager.state("fires").opacity = 0.9
        manager.deactivate("fires")
        assert run(manager.activate(item)).opacity == 0.9

    def test_set_opacity_validates_range(self, make_manager):
        with pytest.raises(ValueError):
            make_manager().set_opacity("fires", 1.5)

    def test_set_opacity_updates_live_handle(self, make_manager, make_item, surface):
        manager = make_manager(FEATURE_META)
        run(manager.activate(make_item()))
        manager.set_opacity("fires", 0.3)
        assert surface.layers["tnc-layer-fires"].opacity == 0.3

    def test_default_opacity_for_map_services(self, make_manager, make_item, surface):
        manager = make_manager({MAP_URL: {"layers": [{"id": 0, "name": "a"}]}})
        run(manager.activate(make_item("soils", url=MAP_URL)))
        assert surface.layers["tnc-layer-soils"].opacity == 0.8


class TestSubLayers:

    def test_feature_service_resolves_first_layer(self, make_manager, make_item, surface):
        service = "https://example.org/arcgis/rest/services/Roads/FeatureServer"
        manager = make_manager({
            service: {"layers": [{"id": 3, "name": "Roads"}, {"id": 5, "name": "Trails"}]},
            service + "/3": {"name": "Roads"},
        })
        item = make_item("roads", url=service)
        run(manager.activate(item))
        assert surface.layers["tnc-layer-roads"].url == service + "/3"
        assert item.selected_sub_layer_id == 3
        assert [s.id for s in item.available_sub_layers] == [3, 5]

    def test_select_sub_layer_rebuilds(self, make_manager, make_item, surface):
        manager = make_manager({MAP_URL: {"layers": [{"id": 0, "name": "a"}, {"id": 2, "name": "b"}]}})
        item = make_item("soils", url=MAP_URL)
        run(manager.activate(item))
        old = surface.layers["tnc-layer-soils"]
        assert old.visible_sub_layers is None

        state = run(manager.select_sub_layer("soils", 2))
        new = surface.layers["tnc-layer-soils"]
        assert state.status == LayerStatus.ACTIVE
        assert old.destroyed and not new.destroyed
        assert new is not old
        assert new.visible_sub_layers == [2]

    def test_latest_selection_wins_during_reload(self, make_manager, make_item, surface):
        service = FEATURE_URL[:-2]
        table = {
            FEATURE_URL: {"name": "Fires"},
            service + "/1": {"name": "Perimeters"},
            service + "/2": {"name": "Points"},
        }

        async def scenario():
            gate = asyncio.Event()

            async def fetch(url, timeout=None):
                if url == service + "/1":
                    await gate.wait()
                return table[url]

            manager = make_manager(fetch_metadata=AsyncMock(side_effect=fetch))
            item = make_item()
            await manager.activate(item)

            first = asyncio.ensure_future(manager.select_sub_layer("fires", 1))
            await asyncio.sleep(0.01)
            assert manager.state("fires").status == LayerStatus.RELOADING
            second = asyncio.ensure_future(manager.select_sub_layer("fires", 2))
            await asyncio.sleep(0.01)
            gate.set()
            await asyncio.gather(first, second)
            return manager, item

        manager, item = run(scenario())
        assert item.selected_sub_layer_id == 2
        assert surface.layers["tnc-layer-fires"].url == service + "/2"
        assert manager.state("fires").status == LayerStatus.ACTIVE
        assert manager.loading_ids == set()

    def test_selection_during_first_load_is_applied(self, make_manager, make_item, surface):
        service = FEATURE_URL[:-2]

        async def scenario():
            gate = asyncio.Event()

            async def fetch(url, timeout=None):
                if url == FEATURE_URL:
                    await gate.wait()
                return {"name": url}

            manager = make_manager(fetch_metadata=AsyncMock(side_effect=fetch))
            item = make_item()
            loading = asyncio.ensure_future(manager.activate(item))
            await asyncio.sleep(0.01)
            selecting = asyncio.ensure_future(manager.select_sub_layer("fires", 4))
            await asyncio.sleep(0.01)
            gate.set()
            await asyncio.gather(loading, selecting)
            return manager

        manager = run(scenario())
        assert surface.layers["tnc-layer-fires"].url == service + "/4"
        assert manager.state("fires").status == LayerStatus.ACTIVE
        assert manager.loading_ids == set()

    def test_select_sub_layer_on_inactive_item_only_records_choice(self, make_manager, make_item, surface):
        manager = make_manager()
        item = make_item("soils", url=MAP_URL)
        manager.register([item])
        run(manager.select_sub_layer("soils", 4))
        assert item.selected_sub_layer_id == 4
        assert surface.layers == {}


class TestLegendAndImages:

    def test_legend_stored_on_item(self, make_manager, make_item, bus):
        legend = LegendData(layer_id="0", layer_name="Fires", items=[])
        fetch_legend = AsyncMock(return_value=legend)
        manager = make_manager(FEATURE_META, fetch_legend=fetch_legend)
        item = make_item()
        run(manager.activate(item))
        assert item.legend_data == legend
        fetch_legend.assert_awaited_once_with(FEATURE_URL[:-2], 0)
        assert bus.events(events.LEGEND_DATA_FETCHED)[-1]["item_id"] == "fires"

    def test_legend_failure_is_swallowed(self, make_manager, make_item):
        manager = make_manager(FEATURE_META, fetch_legend=AsyncMock(side_effect=RuntimeError("no legend")))
        assert run(manager.activate(make_item())).status == LayerStatus.ACTIVE

    def test_untiled_image_flags_slow_load(self, make_manager, make_item, surface, bus):
        surface.paint_delay = 0.05
        manager = make_manager({IMAGE_URL: {"name": "Dem"}}, slow_warning_after=0.01, timed_out_after=1)
        state = run(manager.activate(make_item("dem", url=IMAGE_URL)))

        assert state.status == LayerStatus.ACTIVE
        seen = [e["state"] for e in bus.events(events.IMAGE_LOADING_CHANGE)]
        assert seen[0]["is_loading"] is True
        assert any(s["show_slow_warning"] for s in seen)
        assert not any(s["has_timed_out"] for s in seen)
        assert seen[-1]["is_loading"] is False
        assert manager.image_loading == {}
        assert manager._timers == {}


class TestSync:

    def test_failures_are_isolated(self, make_manager, make_item):
        manager = make_manager(FEATURE_META)
        good = make_item()
        bad = make_item("broken", url="https://example.org/nothing")
        run(manager.sync([good, bad], ["broken", "fires"]))
        assert manager.state("fires").status == LayerStatus.ACTIVE
        assert manager.state("broken").status == LayerStatus.ERROR
        assert manager.loading_ids == set()

    def test_sync_deactivates_missing(self, make_manager, make_item, surface):
        manager = make_manager(FEATURE_META)
        item = make_item()
        run(manager.sync([item], ["fires"]))
        run(manager.sync([item], []))
        assert surface.layers == {}
        assert manager.state("fires").status == LayerStatus.INACTIVE
