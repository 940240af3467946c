"""Recurring planner turning rules and day-ahead prices into scheduled actions."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from threading import Lock

from .action_executor import ensure_timezone, resolve_timezone
from .actions import get_action_repository
from .events import record_event
from .integrations.config import settings
from .integrations.prices import EsiosPriceSource, NoDataAvailable, PriceSource
from .integrations.utils import logger
from .materializer import materialize
from .rules import get_rule_repository
from .schemas import HourlyPrice, PlanReportResponse, Rule, RulePlanResult
from .slot_selector import SelectedInterval, select


@dataclass
class PlanningReport:
    """Outcome of planning every enabled rule for one date."""

    date: date
    results: list[RulePlanResult] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(result.created for result in self.results)

    @property
    def failed(self) -> list[RulePlanResult]:
        return [result for result in self.results if result.outcome == "failed"]

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def to_schema(self) -> PlanReportResponse:
        return PlanReportResponse(
            date=self.date, created=self.created, results=list(self.results)
        )


def _drop_started(
    rule: Rule,
    intervals: list[SelectedInterval],
    target_date: date,
    not_before: datetime | None,
) -> list[SelectedInterval]:
    if not_before is None or target_date != not_before.date():
        return intervals
    current = not_before.time().replace(tzinfo=None)
    kept = [interval for interval in intervals if interval.start_time >= current]
    if len(kept) != len(intervals):
        logger.bind(rule_id=rule.id, date=target_date.isoformat()).debug(
            "Skipping intervals that already started"
        )
    return kept


@dataclass
class PlanningScheduler:
    """Plan enabled rules daily once tomorrow's prices are published.

    ``run_due`` is one tick: it catches up today's plan on the first tick,
    plans tomorrow after ``generation_time``, retries dates whose planning
    failed after ``retry_interval`` and replans rules flagged by
    ``request_replan``, retrying a failed replan on the same interval.
    """

    interval_seconds: int = 60
    generation_time: time = field(default_factory=lambda: settings.generation_time)
    retry_interval: timedelta = field(
        default_factory=lambda: timedelta(minutes=settings.planning_retry_minutes)
    )
    workers: int = field(default_factory=lambda: settings.workers)
    timezone: str = field(default_factory=lambda: settings.timezone)
    price_source: PriceSource | None = None
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _running: bool = field(default=False, init=False)
    _caught_up: bool = field(default=False, init=False)
    _planned: set[date] = field(default_factory=set, init=False)
    _failed: dict[date, datetime] = field(default_factory=dict, init=False)
    _replans: set[str] = field(default_factory=set, init=False)
    _failed_replans: dict[str, datetime] = field(default_factory=dict, init=False)
    _locks: dict[tuple[str, date], Lock] = field(default_factory=dict, init=False)
    _guard: Lock = field(default_factory=Lock, init=False)

    async def start(self) -> None:
        if self._task:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info("Planning scheduler started.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Planning scheduler stopped.")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.run_due)
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Planning iteration failed.", error=str(exc))
            await asyncio.sleep(self.interval_seconds)

    # Planning -----------------------------------------------------------------

    def _prices(self) -> PriceSource:
        if self.price_source is None:
            self.price_source = EsiosPriceSource()
        return self.price_source

    def _lock_for(self, rule_id: str, target_date: date) -> Lock:
        with self._guard:
            return self._locks.setdefault((rule_id, target_date), Lock())

    def _plan_with_prices(
        self,
        rule: Rule,
        prices: list[HourlyPrice],
        target_date: date,
        not_before: datetime | None = None,
    ) -> RulePlanResult:
        log = logger.bind(rule_id=rule.id, date=target_date.isoformat())
        try:
            with self._lock_for(rule.id, target_date):
                intervals = select(rule, prices, target_date)
                intervals = _drop_started(rule, intervals, target_date, not_before)
                if not intervals:
                    log.info("Rule has nothing to schedule")
                    return RulePlanResult(rule_id=rule.id, outcome="empty")
                created = materialize(rule, intervals, target_date)
        except Exception as exc:
            log.exception("Planning rule failed.", error=str(exc))
            return RulePlanResult(rule_id=rule.id, outcome="failed", error=str(exc))
        log.bind(created=created, intervals=len(intervals)).info("Rule planned")
        return RulePlanResult(rule_id=rule.id, outcome="planned", created=created)

    def fetch_prices(self, target_date: date) -> list[HourlyPrice]:
        return self._prices().get_prices(target_date)

    def plan_rule(
        self, rule: Rule, target_date: date, *, not_before: datetime | None = None
    ) -> RulePlanResult:
        """Plan a single rule for ``target_date``."""
        try:
            prices = self.fetch_prices(target_date)
        except NoDataAvailable as exc:
            logger.bind(rule_id=rule.id, date=target_date.isoformat()).warning(
                "No prices available for rule planning: {}", exc
            )
            return RulePlanResult(rule_id=rule.id, outcome="failed", error=str(exc))
        return self._plan_with_prices(rule, prices, target_date, not_before)

    def plan_date(
        self, target_date: date, *, not_before: datetime | None = None
    ) -> PlanningReport:
        """Plan every enabled rule for ``target_date``.

        A failure for one rule is reported without affecting the others.
        When ``not_before`` falls on ``target_date`` intervals starting
        earlier are not materialized.
        """
        rules = get_rule_repository().list(enabled=True)
        report = PlanningReport(date=target_date)
        log = logger.bind(date=target_date.isoformat(), rules=len(rules))
        if not rules:
            log.info("No enabled rules to plan")
            self._record(report)
            return report

        try:
            prices = self.fetch_prices(target_date)
        except NoDataAvailable as exc:
            log.warning("No prices available for planning: {}", exc)
            report.results = [
                RulePlanResult(rule_id=rule.id, outcome="failed", error=str(exc))
                for rule in rules
            ]
            self._record(report)
            return report

        with ThreadPoolExecutor(max_workers=max(self.workers, 1)) as pool:
            report.results = list(
                pool.map(
                    lambda rule: self._plan_with_prices(
                        rule, prices, target_date, not_before
                    ),
                    rules,
                )
            )
        log.bind(created=report.created, failed=len(report.failed)).info(
            "Planning completed"
        )
        self._record(report)
        return report

    def request_replan(self, rule_id: str) -> None:
        """Plan ``rule_id`` for the current horizon on the next tick."""
        with self._guard:
            self._replans.add(rule_id)

    # Periodic tick --------------------------------------------------------------

    def run_due(self, *, now: datetime | None = None) -> list[PlanningReport]:
        tz = resolve_timezone(self.timezone)
        current = ensure_timezone(now, tz) if now else datetime.now(tz)
        today = current.date()
        tomorrow = today + timedelta(days=1)
        published = current.time().replace(tzinfo=None) >= self.generation_time
        self._prune(today)
        reports: list[PlanningReport] = []

        if not self._caught_up:
            self._caught_up = True
            if get_action_repository().count_for_date(today) == 0:
                logger.bind(date=today.isoformat()).info(
                    "No actions planned for today; catching up"
                )
                reports.append(self._plan_tracked(today, current, not_before=current))
            else:
                self._planned.add(today)

        if published and tomorrow not in self._planned and tomorrow not in self._failed:
            if get_action_repository().count_for_date(tomorrow) > 0:
                self._planned.add(tomorrow)
            else:
                reports.append(self._plan_tracked(tomorrow, current))

        for failed_date, failed_at in sorted(self._failed.items()):
            if current - failed_at >= self.retry_interval:
                logger.bind(date=failed_date.isoformat()).info("Retrying failed planning")
                reports.append(
                    self._plan_tracked(failed_date, current, not_before=current)
                )

        self._run_replans(current, today, tomorrow if published else None)
        return reports

    def _plan_tracked(
        self, target_date: date, now: datetime, *, not_before: datetime | None = None
    ) -> PlanningReport:
        report = self.plan_date(target_date, not_before=not_before)
        if report.has_failures:
            self._failed[target_date] = now
        else:
            self._failed.pop(target_date, None)
            self._planned.add(target_date)
        return report

    def _run_replans(self, now: datetime, today: date, tomorrow: date | None) -> None:
        with self._guard:
            rule_ids = set(self._replans)
            self._replans.clear()
        rule_ids.update(
            rule_id
            for rule_id, failed_at in self._failed_replans.items()
            if now - failed_at >= self.retry_interval
        )
        repo = get_rule_repository()
        for rule_id in sorted(rule_ids):
            rule = repo.get(rule_id)
            if rule is None or not rule.enabled:
                self._failed_replans.pop(rule_id, None)
                continue
            results = [
                self.plan_rule(rule, target_date, not_before=now)
                for target_date in (today, tomorrow)
                if target_date is not None
            ]
            if any(result.outcome == "failed" for result in results):
                logger.bind(rule_id=rule_id).warning("Replanning failed; will retry")
                self._failed_replans[rule_id] = now
            else:
                self._failed_replans.pop(rule_id, None)

    def _prune(self, today: date) -> None:
        with self._guard:
            for key in [key for key in self._locks if key[1] < today]:
                self._locks.pop(key, None)
        self._planned = {day for day in self._planned if day >= today}
        self._failed = {day: at for day, at in self._failed.items() if day >= today}

    def _record(self, report: PlanningReport) -> None:
        record_event(
            action="planning_completed",
            subject_type="plan",
            subject_id=report.date.isoformat(),
            actor="planner",
            metadata={
                "created": report.created,
                "planned": [r.rule_id for r in report.results if r.outcome == "planned"],
                "empty": [r.rule_id for r in report.results if r.outcome == "empty"],
                "failed": {r.rule_id: r.error for r in report.failed},
            },
        )


planner = PlanningScheduler()
