"""Operator CLI for creating the SQL schema and running one-off planning."""

from __future__ import annotations

import argparse
import sys
from datetime import date, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from .action_executor import executor, resolve_timezone
from .database import get_engine, is_database_configured
from .db_models import Base
from .integrations.config import settings
from .planning_scheduler import planner


def ensure_configured() -> None:
    if not is_database_configured():
        raise SystemExit(
            "ENERGY_SCHEDULER_DB_URL is not set or ENERGY_SCHEDULER_DB_MODE is "
            "'memory'; cannot run database commands."
        )


def init_db() -> None:
    """Create database tables if they do not already exist."""
    ensure_configured()
    engine = get_engine()
    if engine is None:
        raise SystemExit("Unable to create engine for configured database URL.")

    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise SystemExit(f"Failed to create tables: {exc}") from exc
    print("Database tables ensured.")


def plan(target_date: date | None = None) -> int:
    """Plan every enabled rule for a date once; returns the process exit code."""
    now = datetime.now(resolve_timezone(settings.timezone))
    day = target_date or now.date() + timedelta(days=1)
    report = planner.plan_date(day, not_before=now)
    for result in report.results:
        suffix = f" ({result.error})" if result.error else ""
        print(f"{result.rule_id}: {result.outcome}, {result.created} created{suffix}")
    print(f"{report.created} scheduled action(s) created for {day.isoformat()}.")
    return 1 if report.has_failures else 0


def tick() -> None:
    """Run a single executor pass over due scheduled actions."""
    handled = executor.evaluate_once()
    print(f"{handled} due scheduled action(s) processed.")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the energy scheduler.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create database tables.")
    plan_parser = sub.add_parser("plan", help="Plan enabled rules for a date.")
    plan_parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Date to plan as YYYY-MM-DD (default: tomorrow).",
    )
    sub.add_parser("tick", help="Execute due scheduled actions once.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.command == "init":
        init_db()
    elif args.command == "plan":
        code = plan(args.date)
        if code:
            raise SystemExit(code)
    elif args.command == "tick":
        tick()
    else:
        raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main(sys.argv[1:])
