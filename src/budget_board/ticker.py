"""Over-budget ticker: cosmetic extrapolation between data refreshes.

For an item that is over budget the displayed overage grows from the value
fetched at ``last_refreshed_at``: one hour per elapsed hour for time budgets,
a small fixed amount per hour for value budgets. Nothing here writes state;
the next real refresh resets the origin.
"""

import asyncio
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from budget_board.models import BudgetType, ItemRef, TrackedItem, utc_now

DEFAULT_VALUE_RATE = 0.01
DEFAULT_INTERVAL = 1.0


@dataclass(frozen=True)
class TickerReading:
    """Extrapolated overage for one item at one instant."""

    ref: ItemRef
    budget_type: BudgetType
    overage: float
    label: str


def format_hours(hours: float) -> str:
    """Format hours as ``"Xh Ym"``."""
    total_minutes = round(max(0.0, hours) * 60)
    h, m = divmod(total_minutes, 60)
    return f"{h}h {m}m"


def format_value(amount: float) -> str:
    return f"${amount:.2f} Over Budget"


def elapsed_hours(item: TrackedItem, now: datetime) -> float:
    if item.last_refreshed_at is None:
        return 0.0
    return max(0.0, (now - item.last_refreshed_at).total_seconds() / 3600)


def extrapolate_overage(
    item: TrackedItem, now: datetime, value_rate: float = DEFAULT_VALUE_RATE
) -> TickerReading | None:
    """Return the ticking overage for an over-budget item, else None."""
    if item.budget is None or not item.is_over_budget():
        return None

    base = item.budget.overage()
    elapsed = elapsed_hours(item, now)

    if item.budget_type is BudgetType.VALUE:
        overage = base + elapsed * value_rate
        label = format_value(overage)
    else:
        overage = base + elapsed
        label = format_hours(overage)

    if not math.isfinite(overage):
        return None
    return TickerReading(ref=item.ref, budget_type=item.budget_type, overage=overage, label=label)


class OverBudgetTicker:
    """Recomputes readings for every over-budget item on a fixed interval."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        value_rate: float = DEFAULT_VALUE_RATE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.interval = interval
        self.value_rate = value_rate
        self.clock = clock

    def readings(self, items: Iterable[TrackedItem], now: datetime | None = None) -> list[TickerReading]:
        now = now or self.clock()
        readings = []
        for item in items:
            reading = extrapolate_overage(item, now, self.value_rate)
            if reading is not None:
                readings.append(reading)
        return readings

    async def run(
        self,
        items_provider: Callable[[], Iterable[TrackedItem]],
        on_tick: Callable[[list[TickerReading]], Awaitable[None] | None],
        stop: asyncio.Event,
        max_ticks: int | None = None,
    ) -> int:
        """Tick until ``stop`` is set (or ``max_ticks`` is reached).

        ``items_provider`` is called every tick so a refresh is picked up
        immediately.

        Returns:
            Number of ticks delivered
        """
        ticks = 0
        while not stop.is_set():
            result = on_tick(self.readings(items_provider()))
            if asyncio.iscoroutine(result):
                await result
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        return ticks
