"""Repositories for scheduled actions and their execution lifecycle."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from functools import lru_cache
from threading import Lock
from typing import Protocol

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import get_engine, get_session_factory, is_database_configured
from .db_models import ScheduledActionModel
from .schemas import TERMINAL_STATUSES, ActionStatus, ScheduledAction


class ActionConflictError(RuntimeError):
    """Raised when a command races an action's execution or terminal state."""


# Utility ---------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime) -> str:
    # Fixed-width UTC strings so lexical and chronological order agree.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _opt_ts(value: datetime | None) -> str | None:
    return _ts(value) if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def new_action(
    *,
    rule_id: str,
    device_id: str,
    scheduled_date: date,
    start_time: time,
    end_time: time,
    price: float | None,
) -> ScheduledAction:
    """Build a pending action ready to be inserted."""
    timestamp = _now()
    return ScheduledAction(
        id=str(uuid.uuid4()),
        rule_id=rule_id,
        device_id=device_id,
        scheduled_date=scheduled_date,
        start_time=start_time,
        end_time=end_time,
        price=price,
        status="pending",
        created_at=timestamp,
        updated_at=timestamp,
    )


def action_window(action: ScheduledAction, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return the aware start and end datetimes of an action in ``tz``.

    An end time at or before the start time (``00:00`` for the last hour)
    falls on the following day.
    """
    start = datetime.combine(action.scheduled_date, action.start_time, tzinfo=tz)
    end = datetime.combine(action.scheduled_date, action.end_time, tzinfo=tz)
    if end <= start:
        end += timedelta(days=1)
    return start, end


def is_claimed(action: ScheduledAction, now: datetime) -> bool:
    return action.claimed_until is not None and action.claimed_until > now


def _action_to_model(action: ScheduledAction) -> ScheduledActionModel:
    return ScheduledActionModel(
        id=action.id,
        rule_id=action.rule_id,
        device_id=action.device_id,
        scheduled_date=action.scheduled_date.isoformat(),
        start_time=action.start_time.isoformat(),
        end_time=action.end_time.isoformat(),
        price=action.price,
        status=action.status,
        started_at=_opt_ts(action.started_at),
        executed_at=_opt_ts(action.executed_at),
        claimed_until=_opt_ts(action.claimed_until),
        last_error=action.last_error,
        created_at=_ts(action.created_at),
        updated_at=_ts(action.updated_at),
    )


def _model_to_action(model: ScheduledActionModel) -> ScheduledAction:
    return ScheduledAction(
        id=model.id,
        rule_id=model.rule_id,
        device_id=model.device_id,
        scheduled_date=date.fromisoformat(model.scheduled_date),
        start_time=time.fromisoformat(model.start_time),
        end_time=time.fromisoformat(model.end_time),
        price=model.price,
        status=model.status,
        started_at=_parse_ts(model.started_at),
        executed_at=_parse_ts(model.executed_at),
        claimed_until=_parse_ts(model.claimed_until),
        last_error=model.last_error,
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


def _sort_key(action: ScheduledAction) -> tuple[date, time, str]:
    return action.scheduled_date, action.start_time, action.rule_id


# Repository protocol ---------------------------------------------------------


class ActionRepository(Protocol):
    """Storage port for scheduled actions.

    Implementations enforce uniqueness of ``(rule_id, scheduled_date,
    start_time)`` and never move an action out of a terminal status.
    """

    def insert_if_absent(self, action: ScheduledAction) -> bool:
        ...

    def get(self, action_id: str) -> ScheduledAction | None:
        ...

    def list(
        self,
        *,
        rule_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        status: ActionStatus | None = None,
    ) -> list[ScheduledAction]:
        ...

    def count_for_date(self, scheduled_date: date) -> int:
        ...

    def claim(
        self, action_id: str, *, now: datetime, ttl: timedelta
    ) -> ScheduledAction | None:
        ...

    def mark_started(self, action_id: str, *, at: datetime) -> ScheduledAction | None:
        ...

    def finish(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        at: datetime,
        error: str | None = None,
    ) -> ScheduledAction | None:
        ...

    def cancel(self, action_id: str, *, now: datetime) -> ScheduledAction | None:
        ...

    def clear_pending(
        self, rule_id: str, scheduled_date: date, *, after: time | None = None
    ) -> int:
        ...

    def delete_for_rule(self, rule_id: str) -> int:
        ...


# In-memory repository --------------------------------------------------------


class InMemoryActionRepository(ActionRepository):
    def __init__(self) -> None:
        self._actions: dict[str, ScheduledAction] = {}
        self._by_slot: dict[tuple[str, date, time], str] = {}
        self._lock = Lock()

    def insert_if_absent(self, action: ScheduledAction) -> bool:
        key = (action.rule_id, action.scheduled_date, action.start_time)
        with self._lock:
            if key in self._by_slot:
                return False
            self._actions[action.id] = action.model_copy()
            self._by_slot[key] = action.id
            return True

    def get(self, action_id: str) -> ScheduledAction | None:
        with self._lock:
            action = self._actions.get(action_id)
            return action.model_copy() if action else None

    def list(
        self,
        *,
        rule_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        status: ActionStatus | None = None,
    ) -> list[ScheduledAction]:
        with self._lock:
            actions = [action.model_copy() for action in self._actions.values()]
        if rule_id:
            actions = [a for a in actions if a.rule_id == rule_id]
        if date_from:
            actions = [a for a in actions if a.scheduled_date >= date_from]
        if date_to:
            actions = [a for a in actions if a.scheduled_date <= date_to]
        if status:
            actions = [a for a in actions if a.status == status]
        return sorted(actions, key=_sort_key)

    def count_for_date(self, scheduled_date: date) -> int:
        with self._lock:
            return sum(
                1
                for action in self._actions.values()
                if action.scheduled_date == scheduled_date
            )

    def claim(
        self, action_id: str, *, now: datetime, ttl: timedelta
    ) -> ScheduledAction | None:
        with self._lock:
            action = self._actions.get(action_id)
            if action is None or action.status != "pending" or is_claimed(action, now):
                return None
            action.claimed_until = now + ttl
            action.updated_at = _now()
            return action.model_copy()

    def mark_started(self, action_id: str, *, at: datetime) -> ScheduledAction | None:
        with self._lock:
            action = self._actions.get(action_id)
            if action is None or action.status != "pending":
                return None
            action.started_at = at
            action.claimed_until = None
            action.updated_at = _now()
            return action.model_copy()

    def finish(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        at: datetime,
        error: str | None = None,
    ) -> ScheduledAction | None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal status.")
        with self._lock:
            action = self._actions.get(action_id)
            if action is None or action.status != "pending":
                return None
            action.status = status
            action.claimed_until = None
            action.last_error = error
            if status == "executed":
                action.executed_at = at
            action.updated_at = _now()
            return action.model_copy()

    def cancel(self, action_id: str, *, now: datetime) -> ScheduledAction | None:
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                return None
            _ensure_cancellable(action, now)
            action.status = "cancelled"
            action.updated_at = _now()
            return action.model_copy()

    def clear_pending(
        self, rule_id: str, scheduled_date: date, *, after: time | None = None
    ) -> int:
        now = _now()
        with self._lock:
            doomed = [
                action
                for action in self._actions.values()
                if action.rule_id == rule_id
                and action.scheduled_date == scheduled_date
                and action.status == "pending"
                and action.started_at is None
                and not is_claimed(action, now)
                and (after is None or action.start_time > after)
            ]
            for action in doomed:
                self._drop(action)
            return len(doomed)

    def delete_for_rule(self, rule_id: str) -> int:
        with self._lock:
            doomed = [a for a in self._actions.values() if a.rule_id == rule_id]
            for action in doomed:
                self._drop(action)
            return len(doomed)

    def _drop(self, action: ScheduledAction) -> None:
        self._actions.pop(action.id, None)
        self._by_slot.pop(
            (action.rule_id, action.scheduled_date, action.start_time), None
        )


def _ensure_cancellable(action: ScheduledAction, now: datetime) -> None:
    if action.status != "pending":
        raise ActionConflictError(f"Action is already {action.status}.")
    if action.started_at is not None or is_claimed(action, now):
        raise ActionConflictError("Action has already been claimed for execution.")


# SQLAlchemy repository -------------------------------------------------------


class SqlActionRepository(ActionRepository):
    def __init__(self) -> None:
        self._session_factory = get_session_factory()

    def _session(self) -> Session:
        return self._session_factory()

    def _get_pending_row(
        self, session: Session, action_id: str
    ) -> ScheduledActionModel | None:
        row = session.get(ScheduledActionModel, action_id)
        if row is None or row.status != "pending":
            return None
        return row

    def insert_if_absent(self, action: ScheduledAction) -> bool:
        with self._session() as session:
            existing = session.execute(
                select(ScheduledActionModel.id).where(
                    ScheduledActionModel.rule_id == action.rule_id,
                    ScheduledActionModel.scheduled_date
                    == action.scheduled_date.isoformat(),
                    ScheduledActionModel.start_time == action.start_time.isoformat(),
                )
            ).first()
            if existing is not None:
                return False
            session.add(_action_to_model(action))
            try:
                session.commit()
            except IntegrityError:
                # A concurrent planner inserted the same slot first.
                session.rollback()
                return False
            return True

    def get(self, action_id: str) -> ScheduledAction | None:
        with self._session() as session:
            row = session.get(ScheduledActionModel, action_id)
            return _model_to_action(row) if row else None

    def list(
        self,
        *,
        rule_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        status: ActionStatus | None = None,
    ) -> list[ScheduledAction]:
        stmt = select(ScheduledActionModel)
        if rule_id:
            stmt = stmt.where(ScheduledActionModel.rule_id == rule_id)
        if date_from:
            stmt = stmt.where(ScheduledActionModel.scheduled_date >= date_from.isoformat())
        if date_to:
            stmt = stmt.where(ScheduledActionModel.scheduled_date <= date_to.isoformat())
        if status:
            stmt = stmt.where(ScheduledActionModel.status == status)
        stmt = stmt.order_by(
            ScheduledActionModel.scheduled_date,
            ScheduledActionModel.start_time,
            ScheduledActionModel.rule_id,
        )
        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            return [_model_to_action(row) for row in rows]

    def count_for_date(self, scheduled_date: date) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(ScheduledActionModel.id)).where(
                    ScheduledActionModel.scheduled_date == scheduled_date.isoformat()
                )
            ).scalar_one()

    def claim(
        self, action_id: str, *, now: datetime, ttl: timedelta
    ) -> ScheduledAction | None:
        # Conditional update: only one caller can move the lease forward.
        stmt = (
            update(ScheduledActionModel)
            .where(
                ScheduledActionModel.id == action_id,
                ScheduledActionModel.status == "pending",
                or_(
                    ScheduledActionModel.claimed_until.is_(None),
                    ScheduledActionModel.claimed_until <= _ts(now),
                ),
            )
            .values(claimed_until=_ts(now + ttl), updated_at=_ts(_now()))
        )
        with self._session() as session:
            result = session.execute(stmt)
            session.commit()
            if result.rowcount != 1:
                return None
            row = session.get(ScheduledActionModel, action_id)
            return _model_to_action(row) if row else None

    def mark_started(self, action_id: str, *, at: datetime) -> ScheduledAction | None:
        with self._session() as session:
            row = self._get_pending_row(session, action_id)
            if row is None:
                return None
            row.started_at = _ts(at)
            row.claimed_until = None
            row.updated_at = _ts(_now())
            session.commit()
            return _model_to_action(row)

    def finish(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        at: datetime,
        error: str | None = None,
    ) -> ScheduledAction | None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal status.")
        with self._session() as session:
            row = self._get_pending_row(session, action_id)
            if row is None:
                return None
            row.status = status
            row.claimed_until = None
            row.last_error = error
            if status == "executed":
                row.executed_at = _ts(at)
            row.updated_at = _ts(_now())
            session.commit()
            return _model_to_action(row)

    def cancel(self, action_id: str, *, now: datetime) -> ScheduledAction | None:
        with self._session() as session:
            row = session.get(ScheduledActionModel, action_id)
            if row is None:
                return None
            _ensure_cancellable(_model_to_action(row), now)
            result = session.execute(
                update(ScheduledActionModel)
                .where(
                    ScheduledActionModel.id == action_id,
                    ScheduledActionModel.status == "pending",
                    ScheduledActionModel.started_at.is_(None),
                    or_(
                        ScheduledActionModel.claimed_until.is_(None),
                        ScheduledActionModel.claimed_until <= _ts(now),
                    ),
                )
                .values(status="cancelled", updated_at=_ts(_now()))
            )
            session.commit()
            if result.rowcount != 1:
                raise ActionConflictError("Action changed while cancelling; retry.")
            session.refresh(row)
            return _model_to_action(row)

    def clear_pending(
        self, rule_id: str, scheduled_date: date, *, after: time | None = None
    ) -> int:
        stmt = delete(ScheduledActionModel).where(
            ScheduledActionModel.rule_id == rule_id,
            ScheduledActionModel.scheduled_date == scheduled_date.isoformat(),
            ScheduledActionModel.status == "pending",
            ScheduledActionModel.started_at.is_(None),
            or_(
                ScheduledActionModel.claimed_until.is_(None),
                ScheduledActionModel.claimed_until <= _ts(_now()),
            ),
        )
        if after is not None:
            stmt = stmt.where(ScheduledActionModel.start_time > after.isoformat())
        with self._session() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount

    def delete_for_rule(self, rule_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                delete(ScheduledActionModel).where(
                    ScheduledActionModel.rule_id == rule_id
                )
            )
            session.commit()
            return result.rowcount


# Repository factory ----------------------------------------------------------


@lru_cache
def _default_action_repository() -> InMemoryActionRepository:
    return InMemoryActionRepository()


@lru_cache
def _sql_action_repository() -> SqlActionRepository:
    return SqlActionRepository()


def get_action_repository() -> ActionRepository:
    """Return the configured scheduled action repository."""
    if is_database_configured() and get_engine() is not None:
        return _sql_action_repository()
    return _default_action_repository()


__all__ = [
    "ActionConflictError",
    "ActionRepository",
    "InMemoryActionRepository",
    "SqlActionRepository",
    "action_window",
    "get_action_repository",
    "is_claimed",
    "new_action",
]
