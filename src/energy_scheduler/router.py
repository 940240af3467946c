"""API router exposing rules, scheduled actions, planning and prices."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Body, HTTPException, Query, Request, Response, status

from . import schemas
from .action_executor import resolve_timezone
from .actions import ActionConflictError, get_action_repository
from .constraints import InvalidRuleError
from .events import Event, list_recent_events, record_event
from .integrations.config import settings
from .integrations.prices import NoDataAvailable
from .materializer import clear_pending
from .planning_scheduler import planner
from .rules import delete_rule_cascade, get_rule_repository
from .slot_selector import IncompletePriceData, select, total_price

router = APIRouter(prefix="/api", tags=["rules"])


def _local_now() -> datetime:
    return datetime.now(resolve_timezone(settings.timezone))


def _tomorrow() -> date:
    return _local_now().date() + timedelta(days=1)


def _require_rule(rule_id: str) -> schemas.Rule:
    rule = get_rule_repository().get(rule_id)
    if rule is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Rule not found.")
    return rule


def _resolve_actor(request: Request) -> str:
    header_actor = request.headers.get("x-actor")
    if header_actor:
        candidate = header_actor.strip()
        if candidate:
            return candidate
    return "api"


def _resolve_reason(request: Request) -> str | None:
    header_reason = request.headers.get("x-reason")
    if header_reason:
        candidate = header_reason.strip()
        if candidate:
            return candidate
    return None


def _event_to_schema(event: Event) -> schemas.AuditEvent:
    return schemas.AuditEvent(
        id=event.id,
        timestamp=event.timestamp,
        action=event.action,
        actor=event.actor,
        subject_type=event.subject_type,
        subject_id=event.subject_id,
        reason=event.reason,
        metadata=event.metadata,
    )


def _fetch_prices(target_date: date) -> list[schemas.HourlyPrice]:
    try:
        return planner.fetch_prices(target_date)
    except NoDataAvailable as exc:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def _record_rule_event(
    request: Request, action: str, rule_id: str, metadata: dict[str, object]
) -> None:
    record_event(
        action=action,
        subject_type="rule",
        subject_id=rule_id,
        actor=_resolve_actor(request),
        reason=_resolve_reason(request),
        metadata=metadata,
    )


# Rules -----------------------------------------------------------------------


@router.get("/rules", response_model=schemas.RuleListResponse)
def list_rules(
    device_id: Annotated[str | None, Query(alias="deviceId")] = None,
    enabled: Annotated[bool | None, Query()] = None,
) -> schemas.RuleListResponse:
    rules = get_rule_repository().list(device_id=device_id, enabled=enabled)
    return schemas.RuleListResponse(rules=rules)


@router.post(
    "/rules",
    response_model=schemas.Rule,
    status_code=status.HTTP_201_CREATED,
)
def create_rule(payload: schemas.RuleCreateRequest, request: Request) -> schemas.Rule:
    rule = get_rule_repository().create(payload)
    _record_rule_event(
        request,
        "rule_created",
        rule.id,
        {"device_id": rule.device_id, "name": rule.name},
    )
    if rule.enabled:
        planner.request_replan(rule.id)
    return rule


@router.get("/rules/{rule_id}", response_model=schemas.Rule)
def get_rule(rule_id: str) -> schemas.Rule:
    return _require_rule(rule_id)


@router.patch("/rules/{rule_id}", response_model=schemas.Rule)
def update_rule(
    rule_id: str,
    payload: schemas.RuleUpdateRequest,
    request: Request,
) -> schemas.Rule:
    if not payload.model_dump(exclude_unset=True):
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, detail="No fields provided for update."
        )
    try:
        rule = get_rule_repository().update(rule_id, payload)
    except InvalidRuleError as exc:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    if rule is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Rule not found.")
    _record_rule_event(
        request,
        "rule_updated",
        rule_id,
        {"changes": payload.model_dump(exclude_unset=True, by_alias=True, mode="json")},
    )
    if rule.enabled:
        planner.request_replan(rule.id)
    return rule


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(rule_id: str, request: Request) -> Response:
    deleted, removed = delete_rule_cascade(rule_id)
    if not deleted:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Rule not found.")
    _record_rule_event(request, "rule_deleted", rule_id, {"actions_removed": removed})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/rules/{rule_id}/enable", response_model=schemas.Rule)
def enable_rule(rule_id: str, request: Request) -> schemas.Rule:
    rule = get_rule_repository().set_enabled(rule_id, True)
    if rule is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Rule not found.")
    _record_rule_event(request, "rule_enabled", rule_id, {"device_id": rule.device_id})
    planner.request_replan(rule.id)
    return rule


@router.post("/rules/{rule_id}/disable", response_model=schemas.Rule)
def disable_rule(rule_id: str, request: Request) -> schemas.Rule:
    """Stop planning the rule.

    Actions already scheduled still run; remove them with ``clear-pending``
    or cancel them one by one.
    """
    rule = get_rule_repository().set_enabled(rule_id, False)
    if rule is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Rule not found.")
    _record_rule_event(request, "rule_disabled", rule_id, {"device_id": rule.device_id})
    return rule


@router.post(
    "/rules/{rule_id}/preview",
    response_model=schemas.PlanPreviewResponse,
    tags=["planning"],
)
def preview_rule(
    rule_id: str,
    payload: Annotated[schemas.PlanPreviewRequest | None, Body()] = None,
) -> schemas.PlanPreviewResponse:
    rule = _require_rule(rule_id)
    target_date = (payload.target_date if payload else None) or _tomorrow()
    prices = _fetch_prices(target_date)
    try:
        intervals = select(rule, prices, target_date)
    except IncompletePriceData as exc:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return schemas.PlanPreviewResponse(
        rule_id=rule.id,
        date=target_date,
        intervals=[
            schemas.PlannedInterval(
                start_time=interval.start_time,
                end_time=interval.end_time,
                hours=interval.hours,
                average_price=float(interval.average_price),
                total_price=float(interval.total_price),
            )
            for interval in intervals
        ],
        total_price=float(total_price(intervals)),
    )


@router.post(
    "/rules/{rule_id}/clear-pending",
    response_model=schemas.ClearPendingResponse,
    tags=["actions"],
)
def clear_rule_pending(
    rule_id: str,
    payload: schemas.ClearPendingRequest,
    request: Request,
) -> schemas.ClearPendingResponse:
    _require_rule(rule_id)
    removed = clear_pending(rule_id, payload.date, now=_local_now())
    _record_rule_event(
        request,
        "pending_cleared",
        rule_id,
        {"date": payload.date.isoformat(), "removed": removed},
    )
    return schemas.ClearPendingResponse(rule_id=rule_id, date=payload.date, removed=removed)


# Scheduled actions -----------------------------------------------------------


@router.get(
    "/actions",
    response_model=schemas.ScheduledActionListResponse,
    tags=["actions"],
)
def list_actions(
    rule_id: Annotated[str | None, Query(alias="ruleId")] = None,
    date_from: Annotated[date | None, Query(alias="dateFrom")] = None,
    date_to: Annotated[date | None, Query(alias="dateTo")] = None,
    action_status: Annotated[schemas.ActionStatus | None, Query(alias="status")] = None,
) -> schemas.ScheduledActionListResponse:
    actions = get_action_repository().list(
        rule_id=rule_id, date_from=date_from, date_to=date_to, status=action_status
    )
    return schemas.ScheduledActionListResponse(actions=actions)


@router.get(
    "/actions/{action_id}",
    response_model=schemas.ScheduledAction,
    tags=["actions"],
)
def get_action(action_id: str) -> schemas.ScheduledAction:
    action = get_action_repository().get(action_id)
    if action is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Scheduled action not found.")
    return action


@router.post(
    "/actions/{action_id}/cancel",
    response_model=schemas.ScheduledAction,
    tags=["actions"],
)
def cancel_action(action_id: str, request: Request) -> schemas.ScheduledAction:
    try:
        action = get_action_repository().cancel(action_id, now=_local_now())
    except ActionConflictError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if action is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Scheduled action not found.")
    record_event(
        action="action_cancelled",
        subject_type="scheduled_action",
        subject_id=action.id,
        actor=_resolve_actor(request),
        reason=_resolve_reason(request),
        metadata={
            "rule_id": action.rule_id,
            "scheduled_date": action.scheduled_date.isoformat(),
            "start_time": action.start_time.isoformat(),
        },
    )
    return action


# Planning and prices ---------------------------------------------------------


@router.post(
    "/plans",
    response_model=schemas.PlanReportResponse,
    tags=["planning"],
)
def plan_now(
    payload: Annotated[schemas.PlanRequest | None, Body()] = None,
) -> schemas.PlanReportResponse:
    target_date = (payload.target_date if payload else None) or _tomorrow()
    report = planner.plan_date(target_date, not_before=_local_now())
    return report.to_schema()


@router.get(
    "/prices/{target_date}",
    response_model=schemas.PriceCurveResponse,
    tags=["prices"],
)
def get_prices(target_date: date) -> schemas.PriceCurveResponse:
    return schemas.PriceCurveResponse(date=target_date, prices=_fetch_prices(target_date))


@router.get(
    "/events",
    response_model=schemas.EventListResponse,
    tags=["events"],
)
def list_audit_events(
    limit: Annotated[
        int,
        Query(
            ge=1,
            le=500,
            description="Maximum number of recent events to return.",
        ),
    ] = 100,
    subject_type: Annotated[str | None, Query(alias="subjectType")] = None,
    subject_id: Annotated[str | None, Query(alias="subjectId")] = None,
) -> schemas.EventListResponse:
    events = list_recent_events(limit, subject_type=subject_type, subject_id=subject_id)
    return schemas.EventListResponse(events=[_event_to_schema(event) for event in events])
