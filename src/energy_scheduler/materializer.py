"""Persist selected intervals as pending scheduled actions."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime

from .actions import get_action_repository, new_action
from .integrations.utils import logger
from .schemas import Rule
from .slot_selector import SelectedInterval


def materialize(
    rule: Rule, intervals: Iterable[SelectedInterval], target_date: date
) -> int:
    """Insert one pending action per interval and return how many were created.

    Intervals whose ``(rule, date, start_time)`` slot already holds an action
    are skipped; existing actions are never modified or removed.
    """
    repo = get_action_repository()
    created = 0
    for interval in intervals:
        action = new_action(
            rule_id=rule.id,
            device_id=rule.device_id,
            scheduled_date=target_date,
            start_time=interval.start_time,
            end_time=interval.end_time,
            price=float(interval.average_price),
        )
        if repo.insert_if_absent(action):
            created += 1
        else:
            logger.bind(
                rule_id=rule.id,
                date=target_date.isoformat(),
                start_time=interval.start_time.isoformat(),
            ).debug("Scheduled action already exists; skipping")
    return created


def clear_pending(rule_id: str, target_date: date, *, now: datetime) -> int:
    """Remove a rule's untouched pending actions that start after ``now``.

    ``now`` must be expressed in the scheduler's local timezone. Actions of
    past dates are left alone and actions of future dates are all eligible.
    """
    repo = get_action_repository()
    local_today = now.date()
    if target_date < local_today:
        return 0
    after = now.time().replace(tzinfo=None) if target_date == local_today else None
    removed = repo.clear_pending(rule_id, target_date, after=after)
    logger.bind(rule_id=rule_id, date=target_date.isoformat(), removed=removed).info(
        "Cleared pending scheduled actions"
    )
    return removed


__all__ = ["clear_pending", "materialize"]
