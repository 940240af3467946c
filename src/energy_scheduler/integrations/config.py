"""Configuration helpers for the planner and its external collaborators."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import time
from pathlib import Path

from loguru import logger

DEFAULT_TIMEZONE = "Europe/Madrid"
DEFAULT_ESIOS_BASE_URL = "https://api.esios.ree.es"
# Day-ahead prices for tomorrow are published around 20:15 local time.
DEFAULT_GENERATION_TIME = "20:30"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_time(value: str) -> time:
    hour, _, minute = value.strip().partition(":")
    return time(int(hour), int(minute or 0))


def _candidate_env_paths(start: Path) -> Iterable[Path]:
    """Yield plausible .env locations from closest to farthest."""
    override = os.environ.get("ENERGY_SCHEDULER_ENV_FILE")
    if override:
        yield Path(override).expanduser()

    for directory in (start, *start.parents):
        yield directory / ".env"


def _discover_env_path() -> Path | None:
    """Return the first .env path that exists, if any."""
    package_dir = Path(__file__).resolve().parent
    for candidate in _candidate_env_paths(package_dir):
        if candidate.exists():
            return candidate
    return None


def _load_env_file(path: Path | None = None) -> None:
    """Populate os.environ with values from a .env file if present."""
    env_path = path or _discover_env_path()
    if env_path is None or not env_path.exists():
        logger.debug("No .env file discovered for configuration")
        return

    logger.bind(path=str(env_path)).info("Loading environment variables from .env")
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Respect existing environment variables so runtime overrides win.
        os.environ.setdefault(key, value)


_load_env_file()


@dataclass(frozen=True)
class Settings:
    """Typed accessors for configuration derived from the environment."""

    timezone: str
    generation_time: time
    grace_minutes: int
    max_attempts: int
    retry_base_seconds: float
    planning_retry_minutes: int
    workers: int
    background_tasks: bool
    esios_token: str | None
    esios_base_url: str
    device_control_url: str | None
    device_control_token: str | None
    device_control_timeout: float

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        try:
            generation_time = _parse_time(
                env.get("ENERGY_SCHEDULER_GENERATION_TIME", DEFAULT_GENERATION_TIME)
            )
            grace_minutes = int(env.get("ENERGY_SCHEDULER_GRACE_MINUTES", "5"))
            max_attempts = int(env.get("ENERGY_SCHEDULER_MAX_ATTEMPTS", "5"))
            retry_base_seconds = float(
                env.get("ENERGY_SCHEDULER_RETRY_BASE_SECONDS", "1.0")
            )
            planning_retry_minutes = int(
                env.get("ENERGY_SCHEDULER_PLANNING_RETRY_MINUTES", "30")
            )
            workers = int(env.get("ENERGY_SCHEDULER_WORKERS", "4"))
            device_control_timeout = float(env.get("DEVICE_CONTROL_TIMEOUT", "10"))
        except ValueError as exc:
            raise RuntimeError(f"Invalid scheduler configuration: {exc}") from exc

        esios_token = env.get("ESIOS_TOKEN") or None
        if esios_token is None:
            logger.warning(
                "ESIOS_TOKEN is not set; price fetches will fail until it is configured"
            )

        settings = cls(
            timezone=env.get("ENERGY_SCHEDULER_TIMEZONE", DEFAULT_TIMEZONE),
            generation_time=generation_time,
            grace_minutes=max(grace_minutes, 0),
            max_attempts=max(max_attempts, 1),
            retry_base_seconds=max(retry_base_seconds, 0.0),
            planning_retry_minutes=max(planning_retry_minutes, 1),
            workers=max(workers, 1),
            background_tasks=_parse_bool(
                env.get("ENERGY_SCHEDULER_BACKGROUND_TASKS", "true")
            ),
            esios_token=esios_token,
            esios_base_url=env.get("ESIOS_BASE_URL", DEFAULT_ESIOS_BASE_URL),
            device_control_url=env.get("DEVICE_CONTROL_URL") or None,
            device_control_token=env.get("DEVICE_CONTROL_TOKEN") or None,
            device_control_timeout=device_control_timeout,
        )

        logger.bind(
            timezone=settings.timezone,
            generation_time=settings.generation_time.isoformat(),
            device_control_url=settings.device_control_url,
        ).info("Configuration loaded from environment")
        return settings


settings = Settings.from_env()
