"""Applying edits and recomputing derived revenue on pipeline records.

Every mutation path (API edits, inbound sheet sync, the reconcile command)
funnels through :func:`apply_changes` so the activity trail, milestone dates
and derived revenue stay consistent regardless of origin.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.metrics import observe_recalculation
from app.pipelines.activity import activity_log
from app.pipelines.calculations import RevenueResult, calculate_revenue_for_months, max_gross_from_traffic
from app.pipelines.models import MonthlyForecast, Pipeline, QuarterlySheet
from app.pipelines.quarters import current_quarter_months, fiscal_quarter_months
from app.pipelines.stages import MILESTONE_DATE_FIELDS, PipelineStatus, coerce_status, status_label

logger = logging.getLogger(__name__)

REVENUE_INPUT_FIELDS = frozenset(
    {"max_gross", "revenue_share", "status", "progress_percent", "starting_date", "quarterly_sheet_id"}
)
DERIVED_FIELDS = frozenset({"day_gross", "day_net_rev", "q_gross", "q_net_rev"})
TRAFFIC_FIELDS = frozenset({"imp", "ecpm"})


def _normalize_status(value: Any) -> str:
    try:
        resolved = coerce_status(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"invalid status: {value}") from None
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="status must not be empty")
    return resolved.value


def apply_changes(
    session: Session,
    pipeline: Pipeline,
    changes: dict[str, Any],
    *,
    actor_id: str,
    today: date | None = None,
    allow_won: bool = False,
) -> list[str]:
    """Apply field changes and record them; returns the names of fields that changed.

    Moving a pipeline into Won is reserved for the confirmation action unless
    ``allow_won`` is set. Nothing is committed here.
    """

    today = today or date.today()
    changed: list[str] = []

    for field_name, new_value in changes.items():
        if field_name in DERIVED_FIELDS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{field_name} is derived and cannot be edited",
            )
        old_value = getattr(pipeline, field_name)

        if field_name == "status":
            new_value = _normalize_status(new_value)
            if new_value == old_value:
                continue
            if new_value == PipelineStatus.WON.value and not allow_won:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"use the confirm-transition action to move a pipeline to {status_label(PipelineStatus.WON)}",
                )
            pipeline.status = new_value
            activity_log.append(
                session,
                pipeline_id=pipeline.id,
                activity_type="status_change",
                field_changed="status",
                old_value=status_label(old_value) if old_value else None,
                new_value=status_label(new_value),
                logged_by=actor_id,
            )
            changed.append("status")
            changed.extend(_enter_stage(session, pipeline, PipelineStatus(new_value), changes, actor_id=actor_id, today=today))
            continue

        if new_value == old_value:
            continue
        setattr(pipeline, field_name, new_value)
        activity_log.append(
            session,
            pipeline_id=pipeline.id,
            activity_type="field_update",
            field_changed=field_name,
            old_value=old_value,
            new_value=new_value,
            logged_by=actor_id,
        )
        changed.append(field_name)

    if TRAFFIC_FIELDS.intersection(changed):
        changed.extend(_refresh_max_gross(session, pipeline, actor_id=actor_id))

    if changed:
        pipeline.updated_by = actor_id
    if REVENUE_INPUT_FIELDS.intersection(changed) or not pipeline.forecasts:
        recompute(session, pipeline, today=today)
    return changed


def _enter_stage(
    session: Session,
    pipeline: Pipeline,
    stage: PipelineStatus,
    changes: dict[str, Any],
    *,
    actor_id: str,
    today: date,
) -> list[str]:
    touched: list[str] = []
    milestone = MILESTONE_DATE_FIELDS.get(stage)
    if milestone and getattr(pipeline, milestone) is None and changes.get(milestone) is None:
        setattr(pipeline, milestone, today)
        activity_log.append(
            session,
            pipeline_id=pipeline.id,
            activity_type="field_update",
            field_changed=milestone,
            new_value=today,
            logged_by=actor_id,
        )
        touched.append(milestone)

    if stage is PipelineStatus.DISTRIBUTION_STARTED:
        pipeline.s_confirmation_status = None
        pipeline.s_confirmed_at = None
        pipeline.s_declined_at = None
    return touched


def _refresh_max_gross(session: Session, pipeline: Pipeline, *, actor_id: str) -> list[str]:
    # Traffic edits overwrite max_gross the same way an inbound sheet row does.
    derived = max_gross_from_traffic(pipeline.imp, pipeline.ecpm)
    if derived is None or derived == pipeline.max_gross:
        return []
    old_value = pipeline.max_gross
    pipeline.max_gross = derived
    activity_log.append(
        session,
        pipeline_id=pipeline.id,
        activity_type="field_update",
        field_changed="max_gross",
        old_value=old_value,
        new_value=derived,
        logged_by=actor_id,
    )
    return ["max_gross"]


def _quarter_months(session: Session, pipeline: Pipeline, today: date) -> list[tuple[int, int]]:
    if pipeline.quarterly_sheet_id is not None:
        sheet = session.get(QuarterlySheet, pipeline.quarterly_sheet_id)
        if sheet is not None:
            return fiscal_quarter_months(sheet.year, sheet.quarter)
    return current_quarter_months(today)


def recompute(session: Session, pipeline: Pipeline, *, today: date | None = None) -> RevenueResult:
    """Refresh derived revenue and the three monthly forecasts in place."""

    months = _quarter_months(session, pipeline, today or date.today())
    result = calculate_revenue_for_months(
        max_gross=pipeline.max_gross,
        revenue_share=pipeline.revenue_share,
        status=pipeline.status,
        progress_percent=pipeline.progress_percent,
        starting_date=pipeline.starting_date,
        months=months,
    )

    pipeline.day_gross = result.day_gross
    pipeline.day_net_rev = result.day_net_rev
    pipeline.q_gross = result.q_gross
    pipeline.q_net_rev = result.q_net_rev

    existing = {(item.year, item.month): item for item in pipeline.forecasts}
    wanted = {(item.year, item.month) for item in result.months}
    for key, forecast in existing.items():
        if key not in wanted:
            pipeline.forecasts.remove(forecast)

    for item in result.months:
        forecast = existing.get((item.year, item.month))
        if forecast is None:
            forecast = MonthlyForecast(year=item.year, month=item.month)
            pipeline.forecasts.append(forecast)
        days_in_month = calendar.monthrange(item.year, item.month)[1]
        forecast.delivery_days = item.delivery_days
        forecast.gross_revenue = item.gross_revenue
        forecast.net_revenue = item.net_revenue
        forecast.validation_flag = item.delivery_days is not None and 0 <= item.delivery_days <= days_in_month

    metadata = dict(pipeline.extra_metadata or {})
    metadata["quarterly_breakdown"] = result.quarterly_breakdown()
    pipeline.extra_metadata = metadata

    observe_recalculation()
    logger.debug(
        "pipeline.recomputed",
        extra={"pipeline_id": str(pipeline.id), "status": pipeline.status},
    )
    return result
