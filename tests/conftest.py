"""Shared fixtures for the energy scheduler test-suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import date
from pathlib import Path

# Operate against the in-memory repositories and never start background loops.
os.environ["ENERGY_SCHEDULER_DB_MODE"] = "memory"
os.environ["ENERGY_SCHEDULER_DB_URL"] = ""
os.environ["ENERGY_SCHEDULER_BACKGROUND_TASKS"] = "false"
os.environ["ENERGY_SCHEDULER_TIMEZONE"] = "Europe/Madrid"

import pytest  # noqa: E402

from energy_scheduler import actions, database, events, rules  # noqa: E402
from energy_scheduler.integrations.prices import NoDataAvailable  # noqa: E402
from energy_scheduler.schemas import HourlyPrice, RuleCreateRequest  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_repositories(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    rules._default_rule_repository.cache_clear()
    actions._default_action_repository.cache_clear()
    monkeypatch.setattr(
        events, "_DEFAULT_EVENT_REPOSITORY", events.InMemoryEventRepository()
    )
    yield
    rules._default_rule_repository.cache_clear()
    actions._default_action_repository.cache_clear()


@pytest.fixture
def sql_database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    """Switch every repository to a throwaway SQLite database."""
    url = f"sqlite:///{tmp_path / 'scheduler.db'}"
    monkeypatch.setenv("ENERGY_SCHEDULER_DB_MODE", "database")
    monkeypatch.setenv("ENERGY_SCHEDULER_DB_URL", url)
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_session_factory", None)
    database.get_database_settings.cache_clear()
    rules._sql_rule_repository.cache_clear()
    actions._sql_action_repository.cache_clear()
    events._sql_event_repository.cache_clear()
    yield url
    engine = database._engine
    if engine is not None:
        engine.dispose()
    database.get_database_settings.cache_clear()
    rules._sql_rule_repository.cache_clear()
    actions._sql_action_repository.cache_clear()
    events._sql_event_repository.cache_clear()


def build_curve(values: list[float]) -> list[HourlyPrice]:
    return [HourlyPrice(hour=hour, price=price) for hour, price in enumerate(values)]


class FakePriceSource:
    """Price source returning a fixed curve, or failing for chosen dates."""

    def __init__(
        self,
        curve: list[HourlyPrice] | None = None,
        *,
        unavailable: set[date] | None = None,
    ) -> None:
        self.curve = curve if curve is not None else build_curve(
            [0.10 + 0.01 * hour for hour in range(24)]
        )
        self.unavailable = unavailable or set()
        self.calls: list[date] = []

    def get_prices(self, target_date: date) -> list[HourlyPrice]:
        self.calls.append(target_date)
        if target_date in self.unavailable:
            raise NoDataAvailable(f"No prices published for {target_date}.")
        return list(self.curve)


@pytest.fixture
def price_source() -> FakePriceSource:
    return FakePriceSource()


@pytest.fixture
def make_rule() -> Callable[..., rules.Rule]:
    def _make(**overrides: object) -> rules.Rule:
        payload = {"device_id": "plug-1", "name": "Boiler", "max_hours": 3}
        payload.update(overrides)
        return rules.get_rule_repository().create(RuleCreateRequest(**payload))

    return _make
