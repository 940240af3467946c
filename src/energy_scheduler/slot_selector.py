"""Choose the cheapest hours of a day that satisfy a rule's constraints."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal

from .constraints import HOURS_PER_DAY, weekday_enabled, window_hours
from .schemas import HourlyPrice, Rule


class IncompletePriceData(ValueError):
    """Raised when a price curve does not cover every hour of the day once."""


@dataclass(frozen=True)
class SelectedInterval:
    """A contiguous block of selected hours ``[start_hour, end_hour)``."""

    start_hour: int
    end_hour: int
    hourly_prices: tuple[Decimal, ...]

    @property
    def start_time(self) -> time:
        return time(self.start_hour)

    @property
    def end_time(self) -> time:
        # 24:00 is represented as 00:00 of the following day.
        return time(self.end_hour % HOURS_PER_DAY)

    @property
    def hours(self) -> list[int]:
        return list(range(self.start_hour, self.end_hour))

    @property
    def total_price(self) -> Decimal:
        return sum(self.hourly_prices, Decimal(0))

    @property
    def average_price(self) -> Decimal:
        return self.total_price / len(self.hourly_prices)


def total_price(intervals: Iterable[SelectedInterval]) -> Decimal:
    return sum((interval.total_price for interval in intervals), Decimal(0))


def _price_table(prices: Sequence[HourlyPrice]) -> list[Decimal]:
    if len(prices) != HOURS_PER_DAY:
        raise IncompletePriceData(
            f"Expected {HOURS_PER_DAY} hourly prices, got {len(prices)}."
        )
    table: dict[int, Decimal] = {}
    for entry in prices:
        if entry.hour in table:
            raise IncompletePriceData(f"Duplicate price for hour {entry.hour}.")
        # str() keeps the decimal digits the float was parsed from.
        table[entry.hour] = Decimal(str(entry.price))
    missing = sorted(set(range(HOURS_PER_DAY)) - table.keys())
    if missing:
        raise IncompletePriceData(f"Missing prices for hours {missing}.")
    return [table[hour] for hour in range(HOURS_PER_DAY)]


# (total price, run count, selected hours); smaller is better.
_Candidate = tuple[Decimal, int, tuple[int, ...]]


def _cheapest_selection(
    table: list[Decimal], eligible: set[int], target: int, min_run: int
) -> tuple[int, ...]:
    """Return the best hour selection of the largest feasible size <= target.

    Walks the hours in order keeping, for every (selected count, run state),
    the best candidate so far. Run state 0 means the previous hour was not
    selected; ``s`` in ``1..min_run - 1`` means the current run is ``s``
    hours long and must continue; ``min_run`` means it may stop.
    """
    states: dict[tuple[int, int], _Candidate] = {(0, 0): (Decimal(0), 0, ())}
    for hour in range(HOURS_PER_DAY):
        following: dict[tuple[int, int], _Candidate] = {}

        def offer(key: tuple[int, int], candidate: _Candidate) -> None:
            current = following.get(key)
            if current is None or candidate < current:
                following[key] = candidate

        for (count, run), (price, runs, hours) in states.items():
            if run == 0 or run == min_run:
                offer((count, 0), (price, runs, hours))
            if hour in eligible and count < target:
                offer(
                    (count + 1, min(run + 1, min_run)),
                    (
                        price + table[hour],
                        runs + 1 if run == 0 else runs,
                        (*hours, hour),
                    ),
                )
        states = following

    for size in range(target, 0, -1):
        finals = [
            candidate
            for (count, run), candidate in states.items()
            if count == size and (run == 0 or run == min_run)
        ]
        if finals:
            return min(finals)[2]
    return ()


def _to_intervals(hours: tuple[int, ...], table: list[Decimal]) -> list[SelectedInterval]:
    intervals: list[SelectedInterval] = []
    block: list[int] = []
    for hour in hours:
        if block and hour != block[-1] + 1:
            intervals.append(_interval(block, table))
            block = []
        block.append(hour)
    if block:
        intervals.append(_interval(block, table))
    return intervals


def _interval(block: list[int], table: list[Decimal]) -> SelectedInterval:
    return SelectedInterval(
        start_hour=block[0],
        end_hour=block[-1] + 1,
        hourly_prices=tuple(table[hour] for hour in block),
    )


def select(
    rule: Rule, prices: Sequence[HourlyPrice], target_date: date
) -> list[SelectedInterval]:
    """Return the cheapest chronological intervals satisfying ``rule`` on a date.

    The selection covers ``min(max_hours, eligible hours)`` hours made of
    runs of at least ``min_continuous_hours`` each, falling back to the
    largest feasible total when a window split by midnight cannot hold the
    full amount. Equal totals prefer fewer runs, then earlier hours. An
    empty list means the rule has nothing to schedule that day.

    Raises IncompletePriceData when ``prices`` does not hold exactly one
    price for each of the 24 hours.
    """
    table = _price_table(prices)
    if not weekday_enabled(rule.days_of_week, target_date.weekday()):
        return []

    eligible = set(window_hours(rule.time_window_start, rule.time_window_end))
    min_run = max(rule.min_continuous_hours, 1)
    if len(eligible) < min_run:
        return []

    target = min(rule.max_hours, len(eligible))
    hours = _cheapest_selection(table, eligible, target, min_run)
    return _to_intervals(hours, table)


__all__ = ["IncompletePriceData", "SelectedInterval", "select", "total_price"]
