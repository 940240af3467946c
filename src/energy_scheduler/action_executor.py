"""Background executor that switches devices for due scheduled actions."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .actions import action_window, get_action_repository, is_claimed
from .events import record_event
from .integrations.config import settings
from .integrations.device_control import (
    DeviceControl,
    DeviceControlError,
    DeviceUnreachable,
    build_device_control,
)
from .integrations.utils import logger
from .schemas import ScheduledAction


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(
            "Invalid scheduler timezone; defaulting to UTC.", timezone=name
        )
        return ZoneInfo("UTC")


def ensure_timezone(dt: datetime, tz: ZoneInfo) -> datetime:
    """Attach a timezone to naive datetimes or convert to the provided zone."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


@dataclass
class ActionExecutor:
    """Drive pending actions through turn-on and turn-off.

    ``evaluate_once`` is one tick: due turn-ons and due turn-offs are
    claimed through the repository lease, so concurrent executors never
    call a device twice for the same transition.
    """

    interval_seconds: int = 30
    grace_period: timedelta = field(
        default_factory=lambda: timedelta(minutes=settings.grace_minutes)
    )
    claim_ttl: timedelta = timedelta(minutes=5)
    max_attempts: int = field(default_factory=lambda: settings.max_attempts)
    retry_base_delay: float = field(default_factory=lambda: settings.retry_base_seconds)
    workers: int = field(default_factory=lambda: settings.workers)
    timezone: str = field(default_factory=lambda: settings.timezone)
    device_control: DeviceControl | None = None
    sleep: Callable[[float], None] = time.sleep
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _running: bool = field(default=False, init=False)

    async def start(self) -> None:
        if self._task:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info("Action executor started.")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Action executor stopped.")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.evaluate_once)
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Action executor iteration failed.", error=str(exc))
            await asyncio.sleep(self.interval_seconds)

    def _device(self) -> DeviceControl:
        if self.device_control is None:
            self.device_control = build_device_control()
        return self.device_control

    def evaluate_once(self, *, now: datetime | None = None) -> int:
        """Process every due action once and return how many were handled."""
        tz = resolve_timezone(self.timezone)
        current = ensure_timezone(now, tz) if now else datetime.now(tz)
        due = self._due_actions(current, tz)
        if not due:
            return 0

        logger.bind(count=len(due)).debug("Processing due scheduled actions")
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [
                pool.submit(self._process, action, current, tz) for action in due
            ]
            for future in futures:
                try:
                    future.result()
                except Exception as exc:  # pragma: no cover - defensive logging
                    logger.exception("Scheduled action processing failed.", error=str(exc))
        return len(due)

    def _due_actions(self, now: datetime, tz: ZoneInfo) -> list[ScheduledAction]:
        repo = get_action_repository()
        due: list[ScheduledAction] = []
        for action in repo.list(status="pending", date_to=now.date()):
            if is_claimed(action, now):
                continue
            start, end = action_window(action, tz)
            if action.started_at is None and start <= now:
                due.append(action)
            elif action.started_at is not None and end <= now:
                due.append(action)
        return due

    def _process(self, action: ScheduledAction, now: datetime, tz: ZoneInfo) -> None:
        start, end = action_window(action, tz)
        if action.started_at is None:
            self._turn_on(action, start, end, now)
        else:
            self._turn_off(action, now)

    def _turn_on(
        self, action: ScheduledAction, start: datetime, end: datetime, now: datetime
    ) -> None:
        repo = get_action_repository()
        log = logger.bind(
            action_id=action.id, rule_id=action.rule_id, device_id=action.device_id
        )
        if repo.claim(action.id, now=now, ttl=self.claim_ttl) is None:
            log.debug("Scheduled action already claimed; skipping")
            return

        if now - start > self.grace_period or end <= now:
            reason = f"missed: start {start.isoformat()} is past the grace period"
            repo.finish(action.id, "failed", at=now, error=reason)
            log.warning("Scheduled action missed its start window")
            self._record(action, "action_missed", reason=reason)
            if action.claimed_until is not None:
                # An earlier attempt may have switched the device on before dying.
                self._best_effort_off(action)
            return

        try:
            self._switch(action.device_id, True)
        except DeviceControlError as exc:
            repo.finish(action.id, "failed", at=now, error=str(exc))
            log.error("Turning device on failed: {}", exc)
            self._record(action, "action_failed", reason=str(exc), phase="on")
            self._best_effort_off(action)
            return

        if repo.mark_started(action.id, at=now) is None:
            log.warning("Scheduled action removed while turning on; switching off")
            self.abandon(action, reason="removed while turning on")
            return
        log.info("Device turned on for scheduled action")
        self._record(action, "action_started", phase="on")

    def _turn_off(self, action: ScheduledAction, now: datetime) -> None:
        repo = get_action_repository()
        log = logger.bind(
            action_id=action.id, rule_id=action.rule_id, device_id=action.device_id
        )
        if repo.claim(action.id, now=now, ttl=self.claim_ttl) is None:
            log.debug("Scheduled action already claimed; skipping")
            return

        try:
            self._switch(action.device_id, False)
        except DeviceControlError as exc:
            repo.finish(action.id, "failed", at=now, error=str(exc))
            log.error("Turning device off failed: {}", exc)
            self._record(action, "action_failed", reason=str(exc), phase="off")
            return

        repo.finish(action.id, "executed", at=now)
        log.info("Scheduled action executed")
        self._record(action, "action_executed", phase="off")

    def abandon(self, action: ScheduledAction, *, reason: str) -> None:
        """Switch off the device of a started action that no longer exists."""
        self._best_effort_off(action)
        self._record(action, "action_abandoned", reason=reason, phase="off")

    def _best_effort_off(self, action: ScheduledAction) -> None:
        # Never changes the recorded status.
        try:
            self._device().set_power(action.device_id, False)
        except DeviceControlError as exc:
            logger.bind(action_id=action.id, device_id=action.device_id).warning(
                "Best-effort turn-off failed: {}", exc
            )

    def _switch(self, device_id: str, on: bool) -> None:
        attempts = max(self.max_attempts, 1)
        for attempt in range(attempts):
            try:
                self._device().set_power(device_id, on)
                return
            except DeviceUnreachable as exc:
                if attempt + 1 >= attempts:
                    raise
                delay = self.retry_base_delay * 2**attempt
                logger.bind(device_id=device_id, attempt=attempt + 1).warning(
                    "Device unreachable, retrying in {}s: {}", delay, exc
                )
                self.sleep(delay)

    def _record(
        self,
        action: ScheduledAction,
        event: str,
        *,
        reason: str | None = None,
        phase: str | None = None,
    ) -> None:
        metadata = {
            "rule_id": action.rule_id,
            "device_id": action.device_id,
            "scheduled_date": action.scheduled_date.isoformat(),
            "start_time": action.start_time.isoformat(),
        }
        if phase:
            metadata["phase"] = phase
        record_event(
            action=event,
            subject_type="scheduled_action",
            subject_id=action.id,
            actor="executor",
            reason=reason,
            metadata=metadata,
        )


executor = ActionExecutor()
