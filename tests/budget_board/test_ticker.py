"""Tests for the over-budget ticker."""

import asyncio
from datetime import timedelta

import pytest

from budget_board.models import BudgetType, NoBudget, TimeBudget
from budget_board.ticker import (
    OverBudgetTicker,
    extrapolate_overage,
    format_hours,
    format_value,
)

from .conftest import NOW, make_item, over_budget_time_item, over_budget_value_item


@pytest.mark.parametrize(
    "hours, expected",
    [
        (0, "0h 0m"),
        (2, "2h 0m"),
        (2.5, "2h 30m"),
        (1.9999, "2h 0m"),
        (0.0166667, "0h 1m"),
        (-3, "0h 0m"),
    ],
)
def test_format_hours(hours, expected):
    assert format_hours(hours) == expected


def test_format_value():
    assert format_value(100.126) == "$100.13 Over Budget"


class TestExtrapolation:
    def test_time_overage_grows_one_hour_per_hour(self):
        item = over_budget_time_item()
        reading = extrapolate_overage(item, NOW + timedelta(minutes=90))
        assert reading.budget_type is BudgetType.TIME
        assert reading.overage == pytest.approx(3.5)
        assert reading.label == "3h 30m"

    def test_value_overage_uses_rate(self):
        item = over_budget_value_item()
        reading = extrapolate_overage(item, NOW + timedelta(hours=10), value_rate=0.5)
        assert reading.overage == pytest.approx(105.0)
        assert reading.label == "$105.00 Over Budget"

    def test_at_refresh_time_shows_fetched_overage(self):
        reading = extrapolate_overage(over_budget_time_item(), NOW)
        assert reading.label == "2h 0m"

    def test_clock_behind_refresh_does_not_shrink(self):
        reading = extrapolate_overage(over_budget_time_item(), NOW - timedelta(hours=1))
        assert reading.overage == 2

    def test_missing_refresh_time(self):
        item = over_budget_time_item(last_refreshed_at=None)
        assert extrapolate_overage(item, NOW + timedelta(hours=5)).overage == 2

    @pytest.mark.parametrize(
        "item",
        [
            make_item(1),
            make_item(2, budget=TimeBudget(allowance_hours=10, used_hours=10)),
            make_item(3, budget=NoBudget(used_hours=50)),
            make_item(4, budget=None),
        ],
    )
    def test_items_within_budget_have_no_reading(self, item):
        assert extrapolate_overage(item, NOW + timedelta(hours=1)) is None


class TestOverBudgetTicker:
    """Tests for the tick loop."""

    def test_readings_skip_healthy_items(self):
        ticker = OverBudgetTicker(clock=lambda: NOW)
        items = [make_item(5), over_budget_time_item(1), over_budget_value_item(2)]
        readings = ticker.readings(items)
        assert [str(r.ref) for r in readings] == ["project:1", "agreement:2"]

    @pytest.mark.asyncio
    async def test_run_stops_after_max_ticks(self):
        ticker = OverBudgetTicker(interval=0, clock=lambda: NOW)
        delivered = []

        ticks = await ticker.run(
            lambda: [over_budget_time_item()], delivered.append, asyncio.Event(), max_ticks=3
        )

        assert ticks == 3
        assert len(delivered) == 3
        assert delivered[0][0].label == "2h 0m"

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self):
        ticker = OverBudgetTicker(interval=0.01, clock=lambda: NOW)
        stop = asyncio.Event()
        delivered = []

        async def on_tick(readings):
            delivered.append(readings)
            if len(delivered) == 2:
                stop.set()

        ticks = await ticker.run(lambda: [], on_tick, stop)
        assert ticks == 2
        assert delivered == [[], []]

    @pytest.mark.asyncio
    async def test_provider_called_every_tick(self):
        ticker = OverBudgetTicker(interval=0, clock=lambda: NOW)
        states = iter([[over_budget_time_item()], [make_item(1)]])
        delivered = []

        await ticker.run(lambda: next(states), delivered.append, asyncio.Event(), max_ticks=2)
        assert len(delivered[0]) == 1
        assert delivered[1] == []

    @pytest.mark.asyncio
    async def test_preset_stop_never_ticks(self):
        stop = asyncio.Event()
        stop.set()
        assert await OverBudgetTicker().run(lambda: [], lambda r: None, stop) == 0
