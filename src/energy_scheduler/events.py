"""Audit trail for planning runs and scheduled action transitions."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .database import get_engine, get_session_factory, is_database_configured
from .db_models import EventModel


@dataclass(frozen=True)
class Event:
    """Represents a recorded audit event."""

    id: int | None
    timestamp: datetime
    action: str
    actor: str | None
    subject_type: str
    subject_id: str | None
    reason: str | None
    metadata: dict[str, Any]


class EventRepository(Protocol):
    """Storage abstraction for audit events."""

    def record(self, event: Event) -> Event:
        ...

    def list_recent(
        self,
        limit: int = 100,
        *,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[Event]:
        ...


class InMemoryEventRepository(EventRepository):
    """Bounded in-memory event store used when no database is configured."""

    def __init__(self, capacity: int = 5000) -> None:
        self._events: list[Event] = []
        self._lock = Lock()
        self._counter = 0
        self._capacity = capacity

    def record(self, event: Event) -> Event:
        with self._lock:
            self._counter += 1
            stored = replace(event, id=self._counter)
            self._events.append(stored)
            if len(self._events) > self._capacity:
                del self._events[: len(self._events) - self._capacity]
            return stored

    def list_recent(
        self,
        limit: int = 100,
        *,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[Event]:
        with self._lock:
            matches = [
                event
                for event in reversed(self._events)
                if (subject_type is None or event.subject_type == subject_type)
                and (subject_id is None or event.subject_id == subject_id)
            ]
        return matches[:limit]


def _row_to_event(row: EventModel) -> Event:
    return Event(
        id=row.id,
        timestamp=datetime.fromisoformat(row.timestamp),
        action=row.action,
        actor=row.actor,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        reason=row.reason,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class SQLEventRepository(EventRepository):
    """SQLAlchemy-backed event repository."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, event: Event) -> Event:
        model = EventModel(
            timestamp=event.timestamp.isoformat(),
            action=event.action,
            actor=event.actor,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            reason=event.reason,
            metadata_json=json.dumps(event.metadata, default=str)
            if event.metadata
            else None,
        )
        with self._session_factory() as session:
            session.add(model)
            session.commit()
            session.refresh(model)
            return _row_to_event(model)

    def list_recent(
        self,
        limit: int = 100,
        *,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[Event]:
        stmt = select(EventModel)
        if subject_type is not None:
            stmt = stmt.where(EventModel.subject_type == subject_type)
        if subject_id is not None:
            stmt = stmt.where(EventModel.subject_id == subject_id)
        stmt = stmt.order_by(EventModel.id.desc()).limit(limit)
        with self._session_factory() as session:
            rows = session.execute(stmt).scalars().all()
            return [_row_to_event(row) for row in rows]


_DEFAULT_EVENT_REPOSITORY = InMemoryEventRepository()


@lru_cache
def _sql_event_repository() -> SQLEventRepository:
    return SQLEventRepository(get_session_factory())


def get_event_repository() -> EventRepository:
    """Return the configured event repository."""
    if is_database_configured() and get_engine() is not None:
        return _sql_event_repository()
    return _DEFAULT_EVENT_REPOSITORY


def record_event(
    *,
    action: str,
    subject_type: str,
    subject_id: str | None = None,
    actor: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> Event:
    """Persist an audit event."""
    event = Event(
        id=None,
        timestamp=(timestamp or datetime.now(tz=UTC)).astimezone(UTC),
        action=action,
        actor=actor,
        subject_type=subject_type,
        subject_id=subject_id,
        reason=reason,
        metadata=metadata or {},
    )
    return get_event_repository().record(event)


def list_recent_events(
    limit: int = 100,
    *,
    subject_type: str | None = None,
    subject_id: str | None = None,
) -> list[Event]:
    """Return the most recent audit events, optionally for a single subject."""
    return get_event_repository().list_recent(
        limit, subject_type=subject_type, subject_id=subject_id
    )


__all__ = [
    "Event",
    "EventRepository",
    "InMemoryEventRepository",
    "SQLEventRepository",
    "record_event",
    "list_recent_events",
    "get_event_repository",
]
