"""Pydantic models for the energy scheduler FastAPI backend."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constraints import ALL_DAYS_MASK, validate_rule_fields

ActionStatus = Literal["pending", "executed", "failed", "cancelled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"executed", "failed", "cancelled"})


def _to_camel(string: str) -> str:
    first, *rest = string.split("_")
    return first + "".join(word.capitalize() for word in rest)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Prices


class HourlyPrice(CamelModel):
    hour: int = Field(..., ge=0, le=23)
    price: float


class PriceCurveResponse(CamelModel):
    date: date
    prices: list[HourlyPrice]


# ---------------------------------------------------------------------------
# Rules


class Rule(CamelModel):
    id: str
    device_id: str
    name: str
    max_hours: int
    min_continuous_hours: int = 1
    time_window_start: time | None = None
    time_window_end: time | None = None
    days_of_week: int = ALL_DAYS_MASK
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class RuleCreateRequest(CamelModel):
    device_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    max_hours: int = Field(..., ge=1, le=24)
    min_continuous_hours: int = Field(default=1, ge=1)
    time_window_start: time | None = None
    time_window_end: time | None = None
    days_of_week: int = Field(default=ALL_DAYS_MASK, ge=0, le=ALL_DAYS_MASK)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_feasible(self) -> RuleCreateRequest:
        validate_rule_fields(
            max_hours=self.max_hours,
            min_continuous_hours=self.min_continuous_hours,
            time_window_start=self.time_window_start,
            time_window_end=self.time_window_end,
            days_of_week=self.days_of_week,
        )
        return self


class RuleUpdateRequest(CamelModel):
    device_id: str | None = Field(default=None, min_length=1, max_length=255)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    max_hours: int | None = Field(default=None, ge=1, le=24)
    min_continuous_hours: int | None = Field(default=None, ge=1)
    time_window_start: time | None = None
    time_window_end: time | None = None
    days_of_week: int | None = Field(default=None, ge=0, le=ALL_DAYS_MASK)
    enabled: bool | None = None


class RuleListResponse(CamelModel):
    rules: list[Rule]


# ---------------------------------------------------------------------------
# Scheduled actions


class ScheduledAction(CamelModel):
    id: str
    rule_id: str
    device_id: str
    scheduled_date: date
    start_time: time
    end_time: time
    price: float | None = None
    status: ActionStatus = "pending"
    started_at: datetime | None = None
    executed_at: datetime | None = None
    claimed_until: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class ScheduledActionListResponse(CamelModel):
    actions: list[ScheduledAction]


class ClearPendingRequest(CamelModel):
    date: date


class ClearPendingResponse(CamelModel):
    rule_id: str
    date: date
    removed: int = Field(..., ge=0)


# ---------------------------------------------------------------------------
# Planning


class PlannedInterval(CamelModel):
    start_time: time
    end_time: time
    hours: list[int]
    average_price: float
    total_price: float


class PlanPreviewRequest(CamelModel):
    target_date: date | None = None


class PlanPreviewResponse(CamelModel):
    rule_id: str
    date: date
    intervals: list[PlannedInterval] = Field(default_factory=list)
    total_price: float


class PlanRequest(CamelModel):
    target_date: date | None = None


class RulePlanResult(CamelModel):
    rule_id: str
    outcome: Literal["planned", "empty", "failed"]
    created: int = Field(default=0, ge=0)
    error: str | None = None


class PlanReportResponse(CamelModel):
    date: date
    created: int = Field(..., ge=0)
    results: list[RulePlanResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Audit events


class AuditEvent(BaseModel):
    id: int | None = None
    timestamp: datetime
    action: str
    actor: str | None = None
    subject_type: str
    subject_id: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventListResponse(BaseModel):
    events: list[AuditEvent] = Field(default_factory=list)


__all__ = [
    "ActionStatus",
    "TERMINAL_STATUSES",
    "CamelModel",
    "HourlyPrice",
    "PriceCurveResponse",
    "Rule",
    "RuleCreateRequest",
    "RuleUpdateRequest",
    "RuleListResponse",
    "ScheduledAction",
    "ScheduledActionListResponse",
    "ClearPendingRequest",
    "ClearPendingResponse",
    "PlannedInterval",
    "PlanPreviewRequest",
    "PlanPreviewResponse",
    "PlanRequest",
    "RulePlanResult",
    "PlanReportResponse",
    "AuditEvent",
    "EventListResponse",
]
