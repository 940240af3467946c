"""Repositories and helpers for managing device scheduling rules."""

from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from functools import lru_cache
from threading import Lock
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .action_executor import executor
from .actions import get_action_repository
from .constraints import validate_rule_fields
from .database import get_engine, get_session_factory, is_database_configured
from .db_models import RuleModel, ScheduledActionModel
from .schemas import Rule, RuleCreateRequest, RuleUpdateRequest

# Utility ---------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _time_to_str(value: time | None) -> str | None:
    return value.isoformat() if value is not None else None


def _str_to_time(value: str | None) -> time | None:
    return time.fromisoformat(value) if value else None


def _rule_to_model(rule: Rule) -> RuleModel:
    return RuleModel(
        id=rule.id,
        device_id=rule.device_id,
        name=rule.name,
        max_hours=rule.max_hours,
        min_continuous_hours=rule.min_continuous_hours,
        time_window_start=_time_to_str(rule.time_window_start),
        time_window_end=_time_to_str(rule.time_window_end),
        days_of_week=rule.days_of_week,
        enabled=rule.enabled,
        created_at=rule.created_at.isoformat(),
        updated_at=rule.updated_at.isoformat(),
    )


def _model_to_rule(model: RuleModel) -> Rule:
    return Rule(
        id=model.id,
        device_id=model.device_id,
        name=model.name,
        max_hours=model.max_hours,
        min_continuous_hours=model.min_continuous_hours,
        time_window_start=_str_to_time(model.time_window_start),
        time_window_end=_str_to_time(model.time_window_end),
        days_of_week=model.days_of_week,
        enabled=bool(model.enabled),
        created_at=datetime.fromisoformat(model.created_at),
        updated_at=datetime.fromisoformat(model.updated_at),
    )


def _build_rule(payload: RuleCreateRequest) -> Rule:
    timestamp = _now()
    return Rule(
        id=str(uuid.uuid4()),
        device_id=payload.device_id,
        name=payload.name,
        max_hours=payload.max_hours,
        min_continuous_hours=payload.min_continuous_hours,
        time_window_start=payload.time_window_start,
        time_window_end=payload.time_window_end,
        days_of_week=payload.days_of_week,
        enabled=payload.enabled,
        created_at=timestamp,
        updated_at=timestamp,
    )


def _apply_update(rule: Rule, update: RuleUpdateRequest) -> Rule:
    """Return a copy of ``rule`` with the update applied and re-validated.

    Raises InvalidRuleError when the merged rule is infeasible.
    """
    data = update.model_dump(exclude_unset=True)
    # Nullable window bounds may be cleared explicitly; other nulls mean "keep".
    changes = {
        key: value
        for key, value in data.items()
        if value is not None or key in {"time_window_start", "time_window_end"}
    }
    updated = rule.model_copy(update=changes)
    validate_rule_fields(
        max_hours=updated.max_hours,
        min_continuous_hours=updated.min_continuous_hours,
        time_window_start=updated.time_window_start,
        time_window_end=updated.time_window_end,
        days_of_week=updated.days_of_week,
    )
    updated.updated_at = _now()
    return updated


# Repository protocol ---------------------------------------------------------


class RuleRepository(Protocol):
    """Abstraction used by routers and the planner to manage rules."""

    def list(
        self,
        *,
        device_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[Rule]:
        ...

    def get(self, rule_id: str) -> Rule | None:
        ...

    def create(self, payload: RuleCreateRequest) -> Rule:
        ...

    def update(self, rule_id: str, payload: RuleUpdateRequest) -> Rule | None:
        ...

    def set_enabled(self, rule_id: str, enabled: bool) -> Rule | None:
        ...

    def delete(self, rule_id: str) -> bool:
        ...


# In-memory repository --------------------------------------------------------


class InMemoryRuleRepository(RuleRepository):
    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {}
        self._lock = Lock()

    def list(
        self,
        *,
        device_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[Rule]:
        with self._lock:
            rules = [rule.model_copy() for rule in self._rules.values()]
        if device_id:
            rules = [rule for rule in rules if rule.device_id == device_id]
        if enabled is not None:
            rules = [rule for rule in rules if rule.enabled is enabled]
        return sorted(rules, key=lambda rule: (rule.name.lower(), rule.id))

    def get(self, rule_id: str) -> Rule | None:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy() if rule else None

    def create(self, payload: RuleCreateRequest) -> Rule:
        rule = _build_rule(payload)
        with self._lock:
            self._rules[rule.id] = rule
        return rule.model_copy()

    def update(self, rule_id: str, payload: RuleUpdateRequest) -> Rule | None:
        with self._lock:
            existing = self._rules.get(rule_id)
            if existing is None:
                return None
            updated = _apply_update(existing, payload)
            self._rules[rule_id] = updated
            return updated.model_copy()

    def set_enabled(self, rule_id: str, enabled: bool) -> Rule | None:
        return self.update(rule_id, RuleUpdateRequest(enabled=enabled))

    def delete(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


# SQLAlchemy repository -------------------------------------------------------


class SqlRuleRepository(RuleRepository):
    def __init__(self) -> None:
        self._session_factory = get_session_factory()

    def _session(self) -> Session:
        return self._session_factory()

    def list(
        self,
        *,
        device_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[Rule]:
        with self._session() as session:
            stmt = select(RuleModel)
            if device_id:
                stmt = stmt.where(RuleModel.device_id == device_id)
            if enabled is not None:
                stmt = stmt.where(RuleModel.enabled == enabled)
            stmt = stmt.order_by(RuleModel.name, RuleModel.id)
            rows = session.execute(stmt).scalars().all()
            return [_model_to_rule(row) for row in rows]

    def get(self, rule_id: str) -> Rule | None:
        with self._session() as session:
            row = session.get(RuleModel, rule_id)
            return _model_to_rule(row) if row else None

    def create(self, payload: RuleCreateRequest) -> Rule:
        rule = _build_rule(payload)
        with self._session() as session:
            session.add(_rule_to_model(rule))
            session.commit()
        return rule

    def update(self, rule_id: str, payload: RuleUpdateRequest) -> Rule | None:
        with self._session() as session:
            existing = session.get(RuleModel, rule_id)
            if existing is None:
                return None
            updated = _apply_update(_model_to_rule(existing), payload)
            session.merge(_rule_to_model(updated))
            session.commit()
            return updated

    def set_enabled(self, rule_id: str, enabled: bool) -> Rule | None:
        return self.update(rule_id, RuleUpdateRequest(enabled=enabled))

    def delete(self, rule_id: str) -> bool:
        with self._session() as session:
            existing = session.get(RuleModel, rule_id)
            if existing is None:
                return False
            # Explicit cascade; the FK covers databases that enforce it as well.
            session.execute(
                delete(ScheduledActionModel).where(
                    ScheduledActionModel.rule_id == rule_id
                )
            )
            session.delete(existing)
            session.commit()
            return True


# Repository factory ----------------------------------------------------------


@lru_cache
def _default_rule_repository() -> InMemoryRuleRepository:
    return InMemoryRuleRepository()


@lru_cache
def _sql_rule_repository() -> SqlRuleRepository:
    return SqlRuleRepository()


def get_rule_repository() -> RuleRepository:
    """Return the configured rule repository."""
    if is_database_configured() and get_engine() is not None:
        return _sql_rule_repository()
    return _default_rule_repository()


def delete_rule_cascade(rule_id: str) -> tuple[bool, int]:
    """Delete a rule together with every scheduled action it owns.

    Devices already switched on by a pending action are switched off once
    the actions are gone. Returns whether the rule existed and how many
    actions were removed.
    """
    if get_rule_repository().get(rule_id) is None:
        return False, 0
    actions = get_action_repository()
    running = [
        action
        for action in actions.list(rule_id=rule_id, status="pending")
        if action.started_at is not None
    ]
    removed = actions.delete_for_rule(rule_id)
    deleted = get_rule_repository().delete(rule_id)
    for action in running:
        executor.abandon(action, reason="rule deleted")
    return deleted, removed


__all__ = [
    "RuleRepository",
    "InMemoryRuleRepository",
    "SqlRuleRepository",
    "get_rule_repository",
    "delete_rule_cascade",
]
