"""Tests for the scheduled action executor."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from energy_scheduler import action_executor
from energy_scheduler.action_executor import ActionExecutor
from energy_scheduler.actions import get_action_repository, new_action
from energy_scheduler.events import list_recent_events
from energy_scheduler.integrations.device_control import (
    DeviceRejected,
    DeviceUnreachable,
)
from energy_scheduler.rules import delete_rule_cascade

TZ = ZoneInfo("Europe/Madrid")
DAY = date(2026, 10, 20)


class RecordingDeviceControl:
    """Device control double that fails a configurable number of calls."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[tuple[str, bool]] = []

    def set_power(self, device_id: str, on: bool) -> None:
        self.calls.append((device_id, on))
        if self.failures:
            raise self.failures.pop(0)


def _executor(device: RecordingDeviceControl, sleeps: list[float] | None = None) -> ActionExecutor:
    recorded = sleeps if sleeps is not None else []
    return ActionExecutor(
        grace_period=timedelta(minutes=5),
        max_attempts=3,
        retry_base_delay=1.0,
        workers=2,
        timezone="Europe/Madrid",
        device_control=device,
        sleep=recorded.append,
    )


def _schedule(make_rule, start: int = 2, end: int = 3):
    rule = make_rule()
    action = new_action(
        rule_id=rule.id,
        device_id=rule.device_id,
        scheduled_date=DAY,
        start_time=time(start),
        end_time=time(end % 24),
        price=0.1,
    )
    assert get_action_repository().insert_if_absent(action)
    return action


def _at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=TZ)


def test_action_past_grace_fails_without_device_call(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl()

    _executor(device).evaluate_once(now=_at(2, 10))

    stored = get_action_repository().get(action.id)
    assert stored.status == "failed"
    assert stored.last_error.startswith("missed")
    assert device.calls == []


def test_action_runs_on_then_off(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl()
    executor = _executor(device)

    assert executor.evaluate_once(now=_at(1, 59)) == 0
    executor.evaluate_once(now=_at(2, 1))
    started = get_action_repository().get(action.id)
    assert started.status == "pending"
    assert started.started_at == _at(2, 1)
    assert started.claimed_until is None

    executor.evaluate_once(now=_at(3, 0))
    finished = get_action_repository().get(action.id)
    assert finished.status == "executed"
    assert finished.executed_at == _at(3, 0)
    assert device.calls == [("plug-1", True), ("plug-1", False)]
    recorded = [event.action for event in list_recent_events(subject_id=action.id)]
    assert recorded == ["action_executed", "action_started"]


def test_midnight_end_turns_off_next_day(make_rule):
    action = _schedule(make_rule, start=23, end=24)
    device = RecordingDeviceControl()
    executor = _executor(device)

    executor.evaluate_once(now=_at(23, 0))
    executor.evaluate_once(now=_at(23, 59))
    assert get_action_repository().get(action.id).status == "pending"

    executor.evaluate_once(now=_at(0, 0, day=DAY + timedelta(days=1)))
    assert get_action_repository().get(action.id).status == "executed"


def test_unreachable_device_is_retried_with_backoff(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl(
        failures=[DeviceUnreachable("timeout"), DeviceUnreachable("timeout")]
    )
    sleeps: list[float] = []

    _executor(device, sleeps).evaluate_once(now=_at(2, 0))

    assert get_action_repository().get(action.id).started_at is not None
    assert len(device.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_fail_and_attempt_turn_off(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl(
        failures=[DeviceUnreachable("down")] * 4
    )

    _executor(device).evaluate_once(now=_at(2, 0))

    stored = get_action_repository().get(action.id)
    assert stored.status == "failed"
    assert stored.last_error == "down"
    assert device.calls == [("plug-1", True)] * 3 + [("plug-1", False)]


def test_rejected_command_is_not_retried(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl(failures=[DeviceRejected("unknown device")])
    sleeps: list[float] = []

    _executor(device, sleeps).evaluate_once(now=_at(2, 0))

    assert get_action_repository().get(action.id).status == "failed"
    assert device.calls == [("plug-1", True), ("plug-1", False)]
    assert sleeps == []


def test_failed_turn_off_marks_action_failed(make_rule):
    action = _schedule(make_rule)
    device = RecordingDeviceControl()
    executor = _executor(device)
    executor.evaluate_once(now=_at(2, 0))

    device.failures = [DeviceRejected("offline")]
    executor.evaluate_once(now=_at(3, 0))

    stored = get_action_repository().get(action.id)
    assert stored.status == "failed"
    assert stored.executed_at is None


@pytest.mark.parametrize("status", ["cancelled", "executed", "failed"])
def test_terminal_actions_are_ignored(make_rule, status):
    action = _schedule(make_rule)
    get_action_repository().finish(action.id, status, at=_at(1, 0))
    device = RecordingDeviceControl()

    assert _executor(device).evaluate_once(now=_at(2, 1)) == 0
    assert device.calls == []
    assert get_action_repository().get(action.id).status == status


def test_claimed_action_is_skipped(make_rule):
    action = _schedule(make_rule)
    get_action_repository().claim(action.id, now=_at(2, 0), ttl=timedelta(minutes=5))
    device = RecordingDeviceControl()

    _executor(device).evaluate_once(now=_at(2, 1))

    assert device.calls == []
    assert get_action_repository().get(action.id).started_at is None


def test_missed_action_with_expired_claim_switches_device_off(make_rule):
    action = _schedule(make_rule)
    get_action_repository().claim(action.id, now=_at(2, 0), ttl=timedelta(minutes=5))
    device = RecordingDeviceControl()

    _executor(device).evaluate_once(now=_at(2, 6))

    stored = get_action_repository().get(action.id)
    assert stored.status == "failed"
    assert stored.last_error.startswith("missed")
    assert device.calls == [("plug-1", False)]


def test_deleting_rule_switches_off_running_device(make_rule, monkeypatch):
    action = _schedule(make_rule)
    device = RecordingDeviceControl()
    monkeypatch.setattr(action_executor.executor, "device_control", device)
    executor = _executor(device)
    executor.evaluate_once(now=_at(2, 0))

    deleted, removed = delete_rule_cascade(action.rule_id)
    executor.evaluate_once(now=_at(3, 0))

    assert (deleted, removed) == (True, 1)
    assert device.calls == [("plug-1", True), ("plug-1", False)]
    recorded = [event.action for event in list_recent_events(subject_id=action.id)]
    assert "action_abandoned" in recorded


def test_action_removed_during_turn_on_switches_device_off(make_rule):
    action = _schedule(make_rule)

    class RemovingDeviceControl(RecordingDeviceControl):
        def set_power(self, device_id: str, on: bool) -> None:
            super().set_power(device_id, on)
            if on:
                get_action_repository().delete_for_rule(action.rule_id)

    device = RemovingDeviceControl()

    _executor(device).evaluate_once(now=_at(2, 0))

    assert device.calls == [("plug-1", True), ("plug-1", False)]
    assert get_action_repository().get(action.id) is None
    recorded = [event.action for event in list_recent_events(subject_id=action.id)]
    assert recorded[0] == "action_abandoned"
