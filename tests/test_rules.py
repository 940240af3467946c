"""Tests for rule validation and the rule repositories."""

from __future__ import annotations

from datetime import time

import pytest

from energy_scheduler.constraints import (
    InvalidRuleError,
    longest_block,
    validate_rule_fields,
    weekday_enabled,
    window_hours,
)
from energy_scheduler.rules import get_rule_repository
from energy_scheduler.schemas import RuleUpdateRequest


def test_window_hours_cover_plain_wrapping_and_open_windows():
    assert window_hours(time(8), time(12)) == [8, 9, 10, 11]
    assert window_hours(time(22), time(2)) == [0, 1, 22, 23]
    assert window_hours(time(20), None) == [20, 21, 22, 23]
    assert window_hours(None, time(3)) == [0, 1, 2]
    assert window_hours(None, None) == list(range(24))
    assert window_hours(time(5), time(5)) == []


def test_weekday_mask_uses_monday_as_bit_zero():
    assert weekday_enabled(0b0000001, 0)
    assert not weekday_enabled(0b0000001, 6)
    assert weekday_enabled(0b1000000, 6)


def test_window_shorter_than_minimum_run_is_rejected():
    with pytest.raises(InvalidRuleError, match="shorter than"):
        validate_rule_fields(
            max_hours=4,
            min_continuous_hours=3,
            time_window_start=time(23),
            time_window_end=time(1),
            days_of_week=127,
        )


def test_wrapping_window_needs_a_same_day_block_for_the_minimum_run():
    assert longest_block(window_hours(time(22), time(2))) == 2
    assert longest_block(window_hours(time(20), time(1))) == 4

    with pytest.raises(InvalidRuleError, match="inside one day"):
        validate_rule_fields(
            max_hours=3,
            min_continuous_hours=3,
            time_window_start=time(22),
            time_window_end=time(2),
            days_of_week=127,
        )
    validate_rule_fields(
        max_hours=3,
        min_continuous_hours=3,
        time_window_start=time(21),
        time_window_end=time(2),
        days_of_week=127,
    )


def test_update_keeps_unset_fields_and_clears_window(make_rule):
    rule = make_rule(time_window_start=time(6), time_window_end=time(10))
    repo = get_rule_repository()

    renamed = repo.update(rule.id, RuleUpdateRequest(name="Pool pump", max_hours=None))
    assert renamed.name == "Pool pump"
    assert renamed.max_hours == rule.max_hours
    assert renamed.time_window_start == time(6)

    cleared = repo.update(
        rule.id, RuleUpdateRequest(time_window_start=None, time_window_end=None)
    )
    assert cleared.time_window_start is None
    assert cleared.time_window_end is None
    assert cleared.updated_at >= rule.updated_at


def test_update_rejects_infeasible_result(make_rule):
    rule = make_rule(max_hours=4, min_continuous_hours=2)

    with pytest.raises(InvalidRuleError):
        get_rule_repository().update(rule.id, RuleUpdateRequest(max_hours=1))

    assert get_rule_repository().get(rule.id).max_hours == 4


def test_sql_rule_repository_roundtrip(sql_database, make_rule):
    rule = make_rule(time_window_start=time(22), time_window_end=time(4), days_of_week=31)
    repo = get_rule_repository()

    stored = repo.get(rule.id)
    assert stored == rule
    assert repo.list(enabled=True) == [rule]
    assert repo.set_enabled(rule.id, False).enabled is False
    assert repo.list(enabled=True) == []
    assert repo.delete(rule.id) is True
    assert repo.get(rule.id) is None
