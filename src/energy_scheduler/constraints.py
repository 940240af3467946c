"""Rule constraint helpers shared by validation and slot selection."""

from __future__ import annotations

from datetime import time

HOURS_PER_DAY = 24
ALL_DAYS_MASK = 0b1111111


class InvalidRuleError(ValueError):
    """Raised when a rule's constraints can never be satisfied."""


def window_hours(start: time | None, end: time | None) -> list[int]:
    """Return the hours of the day covered by the window ``[start, end)``.

    A missing bound leaves that side open: no start means midnight, no end
    means the end of the day. ``end <= start`` wraps past midnight and
    ``start == end`` covers nothing.
    """
    start_hour = start.hour if start is not None else 0
    end_hour = end.hour if end is not None else HOURS_PER_DAY
    if start_hour < end_hour:
        return list(range(start_hour, end_hour))
    if start is None or end is None or start_hour == end_hour:
        return []
    return [*range(0, end_hour), *range(start_hour, HOURS_PER_DAY)]


def longest_block(hours: list[int]) -> int:
    """Return the longest run of consecutive hours, never crossing midnight."""
    longest = current = 0
    previous: int | None = None
    for hour in sorted(hours):
        current = current + 1 if previous is not None and hour == previous + 1 else 1
        longest = max(longest, current)
        previous = hour
    return longest


def weekday_enabled(days_of_week: int, weekday: int) -> bool:
    """Return True when bit ``weekday`` (Monday = 0) is set in the mask."""
    return bool(days_of_week & (1 << weekday))


def _require_whole_hour(value: time | None, label: str) -> None:
    if value is None:
        return
    if value.minute or value.second or value.microsecond:
        raise InvalidRuleError(f"{label} must fall on a whole hour.")


def validate_rule_fields(
    *,
    max_hours: int,
    min_continuous_hours: int,
    time_window_start: time | None,
    time_window_end: time | None,
    days_of_week: int,
) -> None:
    """Raise InvalidRuleError when the combination of fields is infeasible."""
    if not 1 <= max_hours <= HOURS_PER_DAY:
        raise InvalidRuleError("maxHours must be between 1 and 24.")
    if min_continuous_hours < 1:
        raise InvalidRuleError("minContinuousHours must be at least 1.")
    if min_continuous_hours > max_hours:
        raise InvalidRuleError("minContinuousHours must not exceed maxHours.")
    if not 0 <= days_of_week <= ALL_DAYS_MASK:
        raise InvalidRuleError("daysOfWeek must be a 7-bit mask (0-127).")
    _require_whole_hour(time_window_start, "timeWindowStart")
    _require_whole_hour(time_window_end, "timeWindowEnd")
    hours = window_hours(time_window_start, time_window_end)
    span = len(hours)
    if span < min_continuous_hours:
        raise InvalidRuleError(
            f"Time window spans {span} hour(s), shorter than "
            f"minContinuousHours ({min_continuous_hours})."
        )
    # Runs stop at midnight, so a wrapping window splits into two blocks.
    block = longest_block(hours)
    if block < min_continuous_hours:
        raise InvalidRuleError(
            f"Longest run inside one day is {block} hour(s), shorter than "
            f"minContinuousHours ({min_continuous_hours})."
        )
