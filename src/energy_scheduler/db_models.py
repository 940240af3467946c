"""SQLAlchemy ORM models for persisting rules, scheduled actions, and audit events."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


class RuleModel(Base):
    """ORM model representing a user's standing instruction for one device."""

    __tablename__ = "rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    max_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    min_continuous_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    time_window_start: Mapped[str | None] = mapped_column(String(16), nullable=True)
    time_window_end: Mapped[str | None] = mapped_column(String(16), nullable=True)
    days_of_week: Mapped[int] = mapped_column(Integer, nullable=False, default=127)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(64), nullable=False)


class ScheduledActionModel(Base):
    """ORM model representing one committed run interval of a rule."""

    __tablename__ = "scheduled_actions"
    __table_args__ = (
        # One action per (rule, date, start_time).
        UniqueConstraint(
            "rule_id",
            "scheduled_date",
            "start_time",
            name="scheduled_actions_rule_date_time_unique",
        ),
        Index("idx_scheduled_actions_rule_date", "rule_id", "scheduled_date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rule_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_date: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    start_time: Mapped[str] = mapped_column(String(16), nullable=False)
    end_time: Mapped[str] = mapped_column(String(16), nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", index=True
    )
    started_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    executed_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(64), nullable=False)


class EventModel(Base):
    """Audit log entries for significant system actions."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject_type: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
