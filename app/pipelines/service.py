from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import ActorUser
from app.events import publish
from app.metrics import observe_confirmation
from app.pipelines.activity import activity_log
from app.pipelines.lifecycle import apply_changes, recompute
from app.pipelines.models import Pipeline, QuarterlySheet
from app.pipelines.schemas import PipelineUpdate
from app.pipelines.sheets.sync import SheetSyncEngine, sync_engine
from app.pipelines.stages import (
    ConfirmationGateError,
    ConfirmationStatus,
    PipelineStatus,
    check_confirmation_gate,
    check_decline_allowed,
    status_label,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.pipelines.service")

REQUIRED_TEXT_FIELDS = ("poc", "publisher")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _append_notes(existing: str | None, notes: str | None) -> str | None:
    text = (notes or "").strip()
    if not text:
        return existing
    return f"{existing}\n{text}" if existing else text


class PipelineService:
    def __init__(self, engine: SheetSyncEngine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> SheetSyncEngine:
        return self._engine or sync_engine

    def get(self, session: Session, pipeline_id: uuid.UUID) -> Pipeline:
        pipeline = session.get(Pipeline, pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")
        return pipeline

    def list_pipelines(
        self,
        session: Session,
        *,
        group: str | None = None,
        status_filter: str | None = None,
        quarterly_sheet_id: uuid.UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Pipeline]:
        stmt = select(Pipeline)
        if group is not None:
            stmt = stmt.where(Pipeline.group == group)
        if status_filter is not None:
            stmt = stmt.where(Pipeline.status == status_filter)
        if quarterly_sheet_id is not None:
            stmt = stmt.where(Pipeline.quarterly_sheet_id == quarterly_sheet_id)
        stmt = stmt.order_by(Pipeline.created_at.desc(), Pipeline.id.desc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def update(
        self,
        session: Session,
        actor: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
        *,
        today: date | None = None,
    ) -> Pipeline:
        pipeline = self.get(session, pipeline_id)
        changes: dict[str, Any] = dto.model_dump(exclude_unset=True)
        for field_name in REQUIRED_TEXT_FIELDS:
            if field_name in changes and not (changes[field_name] or "").strip():
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} must not be empty")
        if "status" in changes and changes["status"] is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="status must not be empty")
        if changes.get("quarterly_sheet_id") is not None and session.get(QuarterlySheet, changes["quarterly_sheet_id"]) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quarterly sheet not found")

        changed = apply_changes(session, pipeline, changes, actor_id=actor.user_id, today=today)
        session.commit()
        session.refresh(pipeline)

        if changed:
            publish(
                {
                    "event_type": "pipelines.pipeline.updated",
                    "payload": {"pipeline_id": str(pipeline.id), "changed_fields": changed, "actor_user_id": actor.user_id},
                }
            )
            logger.info(
                "pipeline.updated",
                extra={"pipeline_id": str(pipeline.id), "user_id": actor.user_id, "total": len(changed)},
            )
        return pipeline

    def recalculate(self, session: Session, pipeline_id: uuid.UUID, *, today: date | None = None) -> Pipeline:
        pipeline = self.get(session, pipeline_id)
        recompute(session, pipeline, today=today)
        session.commit()
        session.refresh(pipeline)
        return pipeline

    def delete(self, session: Session, actor: ActorUser, pipeline_id: uuid.UUID) -> bool:
        """Delete the pipeline with its forecasts and activity, then its sheet row.

        Returns whether the sheet row was removed; a sheet failure never undoes
        the database delete.
        """

        pipeline = self.get(session, pipeline_id)
        if not (actor.is_super_admin or pipeline.created_by == actor.user_id or "pipelines.delete_any" in actor.permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the pipeline owner or an administrator can delete it",
            )

        sheet_id = pipeline.quarterly_sheet_id
        session.delete(pipeline)
        session.commit()
        logger.info("pipeline.deleted", extra={"pipeline_id": str(pipeline_id), "user_id": actor.user_id})

        row_deleted = self.engine.delete_pipeline_row(session, pipeline_id, sheet_id) if sheet_id else False
        publish(
            {
                "event_type": "pipelines.pipeline.deleted",
                "payload": {"pipeline_id": str(pipeline_id), "sheet_row_deleted": row_deleted, "actor_user_id": actor.user_id},
            }
        )
        return row_deleted

    def confirm_transition(
        self,
        session: Session,
        actor: ActorUser,
        pipeline_id: uuid.UUID,
        *,
        action: str,
        notes: str | None = None,
        today: date | None = None,
        now: datetime | None = None,
    ) -> tuple[Pipeline, str]:
        pipeline = self.get(session, pipeline_id)
        today = today or date.today()
        now = now or utcnow()

        with tracer.start_as_current_span("pipelines.confirm_transition") as span:
            span.set_attribute("pipeline_id", str(pipeline_id))
            span.set_attribute("action", action)
            try:
                if action == "confirm":
                    message = self._confirm(session, actor, pipeline, notes=notes, today=today, now=now)
                elif action == "decline":
                    message = self._decline(session, actor, pipeline, notes=notes, now=now)
                else:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"unknown action: {action}")
            except ConfirmationGateError as exc:
                observe_confirmation(action, exc.reason)
                logger.info(
                    "pipeline.confirmation_rejected",
                    extra={
                        "pipeline_id": str(pipeline_id),
                        "action": action,
                        "error_type": exc.reason,
                        "days_remaining": exc.days_remaining,
                    },
                )
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail()) from exc

        observe_confirmation(action, "accepted")
        session.commit()
        session.refresh(pipeline)
        publish(
            {
                "event_type": "pipelines.pipeline.confirmed" if action == "confirm" else "pipelines.pipeline.declined",
                "payload": {"pipeline_id": str(pipeline.id), "status": pipeline.status, "actor_user_id": actor.user_id},
            }
        )
        logger.info("pipeline.confirmation_applied", extra={"pipeline_id": str(pipeline.id), "action": action, "user_id": actor.user_id})
        return pipeline, message

    def _confirm(
        self,
        session: Session,
        actor: ActorUser,
        pipeline: Pipeline,
        *,
        notes: str | None,
        today: date,
        now: datetime,
    ) -> str:
        gate = check_confirmation_gate(pipeline.status, pipeline.actual_starting_date, today)
        previous = pipeline.status

        pipeline.status = PipelineStatus.WON.value
        pipeline.close_won_date = today
        pipeline.s_confirmation_status = ConfirmationStatus.CONFIRMED.value
        pipeline.s_confirmed_at = now
        pipeline.s_confirmation_notes = _append_notes(pipeline.s_confirmation_notes, notes)
        pipeline.updated_by = actor.user_id

        activity_log.append(
            session,
            pipeline_id=pipeline.id,
            activity_type="status_change",
            field_changed="status",
            old_value=status_label(previous),
            new_value=status_label(PipelineStatus.WON),
            notes=(notes or "").strip() or f"confirmed after {gate.days_elapsed} days of distribution",
            logged_by=actor.user_id,
        )
        recompute(session, pipeline, today=today)
        return f"Pipeline confirmed and moved to {status_label(PipelineStatus.WON)} (Won)"

    def _decline(
        self,
        session: Session,
        actor: ActorUser,
        pipeline: Pipeline,
        *,
        notes: str | None,
        now: datetime,
    ) -> str:
        check_decline_allowed(pipeline.status)
        previous = pipeline.s_confirmation_status

        pipeline.s_confirmation_status = ConfirmationStatus.DECLINED.value
        pipeline.s_declined_at = now
        pipeline.s_confirmation_notes = _append_notes(pipeline.s_confirmation_notes, notes)
        pipeline.updated_by = actor.user_id

        activity_log.append(
            session,
            pipeline_id=pipeline.id,
            activity_type="field_update",
            field_changed="s_confirmation_status",
            old_value=previous,
            new_value=ConfirmationStatus.DECLINED.value,
            notes=(notes or "").strip() or None,
            logged_by=actor.user_id,
        )
        return f"Pipeline confirmation declined; it stays in {status_label(PipelineStatus.DISTRIBUTION_STARTED)}"


pipeline_service = PipelineService()
