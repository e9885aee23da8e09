# ============================================================================
# PHASED TIME-SERIES LOADER TESTS
# ============================================================================
"""
Covers:
1. Merge: union by id, ascending timestamps
2. Two ordered updates, second one final
3. Empty recent window stops before the full-history request
4. Full-history failure keeps the recent data
5. Overlapping loads for one datastream: only the newest survives
6. numpy summary and aggregation helpers
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import points, run
from fieldmap.core.errors import NetworkFailure
from fieldmap.engine.events import EventBus, TIMESERIES_UPDATE
from fieldmap.engine.timeseries import PhasedTimeSeriesLoader, merge_datapoints
from fieldmap.schemas.timeseries import Phase
from fieldmap.services.features import aggregate_datapoints, summarize_datapoints


def scripted_fetch(script):
    """Each call pops ``(delay, datapoints)`` in call order."""
    calls = []

    async def fetch(datastream_id, days_back=None, page_size=None, use_recent_filter=True):
        n = len(calls)
        calls.append(days_back)
        delay, result = script[n]
        await asyncio.sleep(delay)
        if isinstance(result, Exception):
            raise result
        return result

    return fetch, calls


async def collect(loader, datastream_id):
    return [u async for u in loader.load(datastream_id)]


class TestMerge:

    def test_union_by_id_sorted(self):
        recent = points(("A", 10), ("B", 20))
        full = points(("A", 10), ("C", 30))
        merged = merge_datapoints(recent, full)
        assert [p.id for p in merged] == ["A", "B", "C"]
        assert [p.timestamp_utc for p in merged] == [10, 20, 30]

    def test_full_history_wins_for_same_id(self):
        recent = points(("A", 10))
        full = [p.model_copy(update={"value": 99.0}) for p in points(("A", 10))]
        assert merge_datapoints(recent, full)[0].value == 99.0


class TestPhasedLoad:

    def test_two_updates_recent_then_final(self):
        fetch, calls = scripted_fetch([
            (0, points(("A", 10), ("B", 20))),
            (0, points(("A", 10), ("C", 30))),
        ])
        loader = PhasedTimeSeriesLoader(fetch=fetch, recent_days=30)
        updates = run(collect(loader, 7))

        assert [u.phase for u in updates] == [Phase.RECENT, Phase.FULL]
        assert updates[0].final is False
        assert updates[1].final is True
        assert [p.id for p in updates[1].datapoints] == ["A", "B", "C"]
        assert calls == [30, None]
        assert loader.loading == {}
        assert 7 in loader.recent_done

    def test_empty_recent_window_skips_full_history(self):
        fetch, calls = scripted_fetch([(0, [])])
        loader = PhasedTimeSeriesLoader(fetch=fetch)
        updates = run(collect(loader, 7))

        assert len(updates) == 1
        assert updates[0].datapoints == []
        assert calls == [loader.recent_days]

    def test_full_history_failure_keeps_recent_data(self):
        recent = points(("A", 10), ("B", 20))
        fetch, _ = scripted_fetch([(0, recent), (0, NetworkFailure("boom"))])
        loader = PhasedTimeSeriesLoader(fetch=fetch)

        async def scenario():
            seen = []
            with pytest.raises(NetworkFailure):
                async for u in loader.load(7):
                    seen.append(u)
            return seen

        seen = run(scenario())
        assert [u.phase for u in seen] == [Phase.RECENT]
        assert loader.published[7] == recent
        assert loader.loading == {}

    def test_recent_failure_clears_loading(self):
        fetch, _ = scripted_fetch([(0, NetworkFailure("down"))])
        loader = PhasedTimeSeriesLoader(fetch=fetch)
        with pytest.raises(NetworkFailure):
            run(loader.load_all(7))
        assert loader.loading == {}
        assert 7 not in loader.published

    def test_updates_are_emitted_on_bus(self):
        bus = EventBus()
        fetch, _ = scripted_fetch([(0, points(("A", 10))), (0, points(("B", 20)))])
        loader = PhasedTimeSeriesLoader(bus=bus, fetch=fetch)
        run(loader.load_all(7))
        emitted = bus.events(TIMESERIES_UPDATE)
        assert [(e["phase"], e["count"], e["final"]) for e in emitted] == [("recent", 1, False), ("full", 2, True)]

    def test_default_fetch_is_the_sensor_service(self):
        loader = PhasedTimeSeriesLoader()
        fake = AsyncMock(return_value=[])
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("fieldmap.services.dendra.fetch_datapoints", fake)
            run(loader.load_all(3))
        fake.assert_awaited_once_with(3, days_back=loader.recent_days, page_size=loader.page_size,
                                      use_recent_filter=True)


class TestOverlappingLoads:

    def test_first_load_finishing_last_is_discarded(self):
        first = points(("old", 1))
        second_recent = points(("A", 10), ("B", 20))
        second_full = points(("A", 10), ("C", 30))
        fetch, _ = scripted_fetch([(0.05, first), (0, second_recent), (0, second_full)])
        loader = PhasedTimeSeriesLoader(fetch=fetch)

        async def scenario():
            return await asyncio.gather(collect(loader, 7), collect(loader, 7))

        first_updates, second_updates = run(scenario())
        assert first_updates == []
        assert [p.id for p in loader.published[7]] == ["A", "B", "C"]
        assert second_updates[-1].final is True
        assert loader.loading == {}

    def test_first_load_finishing_first_is_superseded(self):
        first_recent = points(("x", 5))
        first_full = points(("x", 5), ("y", 6))
        second_recent = points(("A", 10))
        second_full = points(("A", 10), ("C", 30))
        fetch, calls = scripted_fetch([
            (0, first_recent), (0.05, first_full), (0, second_recent), (0, second_full),
        ])
        loader = PhasedTimeSeriesLoader(fetch=fetch)

        async def scenario():
            task = asyncio.ensure_future(collect(loader, 7))
            await asyncio.sleep(0.01)
            second = await collect(loader, 7)
            first = await task
            return first, second

        first_updates, second_updates = run(scenario())
        # the first load showed its recent window, but its full history was dropped
        assert [u.phase for u in first_updates] == [Phase.RECENT]
        assert [u.phase for u in second_updates] == [Phase.RECENT, Phase.FULL]
        assert [p.id for p in loader.published[7]] == ["A", "C"]
        assert len(calls) == 4

    def test_cancel_discards_in_flight_load(self):
        fetch, _ = scripted_fetch([(0.05, points(("A", 10)))])
        loader = PhasedTimeSeriesLoader(fetch=fetch)

        async def scenario():
            task = asyncio.ensure_future(collect(loader, 7))
            await asyncio.sleep(0.01)
            loader.cancel(7)
            return await task

        assert run(scenario()) == []
        assert 7 not in loader.published
        assert loader.loading == {}


class TestSeriesSummary:

    def test_summary(self):
        pts = points((1, 1000), (2, 2000), (3, 3000))
        s = summarize_datapoints(pts)
        assert s["count"] == 3
        assert s["min"] == 1000.0
        assert s["max"] == 3000.0
        assert s["mean"] == 2000.0
        assert s["first_timestamp"] == 1000
        assert s["last"] == 3000.0

    def test_summary_without_values(self):
        s = summarize_datapoints([])
        assert s["count"] == 0
        assert s["mean"] is None

    def test_weekly_buckets_start_monday(self):
        # 2024-01-03 (Wed) and 2024-01-05 (Fri) share the week of Mon 2024-01-01
        wed = 1704283200000
        fri = 1704456000000
        pts = points((1, wed), (2, fri))
        series = aggregate_datapoints(pts, "weekly")
        assert len(series) == 1
        assert series[0]["timestamp"] == 1704067200000
        assert series[0]["value"] == pytest.approx((wed + fri) / 2)

    def test_unknown_aggregation_rejected(self):
        with pytest.raises(ValueError):
            aggregate_datapoints(points((1, 1000)), "monthly")
