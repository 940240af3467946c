"""Tests for the cheapest-hours slot selection."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from decimal import Decimal
from itertools import combinations

import pytest

from conftest import build_curve
from energy_scheduler.schemas import HourlyPrice, Rule
from energy_scheduler.slot_selector import IncompletePriceData, select, total_price

MONDAY = date(2026, 10, 19)
TUESDAY = date(2026, 10, 20)


def _rule(**overrides: object) -> Rule:
    stamp = datetime(2026, 10, 1, tzinfo=UTC)
    data: dict[str, object] = {
        "id": "rule-1",
        "device_id": "plug-1",
        "name": "Boiler",
        "max_hours": 3,
        "created_at": stamp,
        "updated_at": stamp,
    }
    data.update(overrides)
    return Rule(**data)


def _spans(intervals) -> list[tuple[int, int]]:
    return [(interval.start_hour, interval.end_hour) for interval in intervals]


def test_picks_cheapest_contiguous_run_in_window():
    prices = build_curve([10, 5, 5, 20, 8, 8] + [100] * 18)
    rule = _rule(
        max_hours=3,
        min_continuous_hours=2,
        time_window_start=time(0),
        time_window_end=time(6),
    )

    intervals = select(rule, prices, MONDAY)

    # Three hours split into runs of at least two must be a single run.
    assert _spans(intervals) == [(0, 3)]
    assert total_price(intervals) == Decimal("20")
    assert intervals[0].start_time == time(0)
    assert intervals[0].end_time == time(3)


def test_excluded_weekday_selects_nothing():
    prices = build_curve([10, 5, 5, 20, 8, 8] + [100] * 18)
    rule = _rule(days_of_week=0b0000001)  # Monday only

    assert select(rule, prices, TUESDAY) == []
    assert select(rule, prices, MONDAY) != []


def test_equal_totals_prefer_fewer_runs():
    values = [5.0] * 24
    for hour in (0, 2, 10, 11):
        values[hour] = 1.0
    rule = _rule(max_hours=2)

    intervals = select(rule, build_curve(values), MONDAY)

    assert _spans(intervals) == [(10, 12)]


def test_flat_curve_prefers_earliest_hours():
    rule = _rule(max_hours=3)

    intervals = select(rule, build_curve([0.2] * 24), MONDAY)

    assert _spans(intervals) == [(0, 3)]


def test_wrapping_window_keeps_runs_within_the_day():
    values = [9.0] * 24
    values[0] = values[1] = 1.0
    values[22] = values[23] = 2.0
    rule = _rule(
        max_hours=4,
        min_continuous_hours=2,
        time_window_start=time(22),
        time_window_end=time(2),
    )

    intervals = select(rule, build_curve(values), MONDAY)

    assert _spans(intervals) == [(0, 2), (22, 24)]
    assert intervals[-1].end_time == time(0)


def test_wrapping_window_falls_back_to_largest_feasible_total():
    values = [9.0] * 24
    values[0] = values[1] = 1.0
    values[22] = values[23] = 3.0
    rule = _rule(
        max_hours=3,
        min_continuous_hours=2,
        time_window_start=time(22),
        time_window_end=time(2),
    )

    intervals = select(rule, build_curve(values), MONDAY)

    assert _spans(intervals) == [(0, 2)]


def test_max_hours_capped_by_window():
    rule = _rule(max_hours=5, time_window_start=time(10), time_window_end=time(12))

    intervals = select(rule, build_curve([0.1] * 24), MONDAY)

    assert _spans(intervals) == [(10, 12)]


def test_selection_matches_exhaustive_search():
    values = [
        0.131, 0.118, 0.109, 0.102, 0.099, 0.104, 0.121, 0.158,
        0.171, 0.149, 0.097, 0.088, 0.091, 0.112, 0.095, 0.093,
        0.141, 0.182, 0.205, 0.199, 0.176, 0.160, 0.147, 0.139,
    ]
    rule = _rule(
        max_hours=5,
        min_continuous_hours=2,
        time_window_start=time(6),
        time_window_end=time(18),
    )

    intervals = select(rule, build_curve(values), MONDAY)

    def runs_ok(hours: tuple[int, ...]) -> bool:
        run = 1
        for previous, current in zip(hours, hours[1:]):
            if current == previous + 1:
                run += 1
            else:
                if run < 2:
                    return False
                run = 1
        return run >= 2

    best = min(
        sum((Decimal(str(values[h])) for h in combo), Decimal(0))
        for combo in combinations(range(6, 18), 5)
        if runs_ok(combo)
    )
    assert sum(interval.end_hour - interval.start_hour for interval in intervals) == 5
    assert total_price(intervals) == best
    assert all(
        interval.end_hour - interval.start_hour >= 2 for interval in intervals
    )


def test_intervals_carry_hourly_prices():
    values = [0.3] * 24
    values[4], values[5] = 0.1, 0.2
    rule = _rule(max_hours=2, min_continuous_hours=2)

    (interval,) = select(rule, build_curve(values), MONDAY)

    assert interval.hours == [4, 5]
    assert interval.hourly_prices == (Decimal("0.1"), Decimal("0.2"))
    assert interval.average_price == Decimal("0.15")


def test_missing_hour_raises():
    prices = build_curve([0.1] * 23)
    with pytest.raises(IncompletePriceData, match="Expected 24"):
        select(_rule(), prices, MONDAY)


def test_duplicate_hour_raises():
    prices = build_curve([0.1] * 23) + [HourlyPrice(hour=5, price=0.2)]
    with pytest.raises(IncompletePriceData, match="Duplicate"):
        select(_rule(), prices, MONDAY)
