from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.pipelines.models import Pipeline, PipelineActivity

ACTIVITY_TYPES = ("status_change", "field_update", "note")


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return str(value)


class ActivityLogService:
    """Append-only provenance trail for pipelines.

    ``append`` only stages the entry on the session; the caller owns the
    transaction so the entry commits together with the change it records.
    """

    def append(
        self,
        session: Session,
        *,
        pipeline_id: uuid.UUID,
        activity_type: str,
        logged_by: str,
        field_changed: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
        notes: str | None = None,
    ) -> PipelineActivity:
        if activity_type not in ACTIVITY_TYPES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"invalid activity type: {activity_type}")
        entry = PipelineActivity(
            pipeline_id=pipeline_id,
            activity_type=activity_type,
            field_changed=field_changed,
            old_value=_stringify(old_value),
            new_value=_stringify(new_value),
            notes=notes,
            logged_by=logged_by,
        )
        session.add(entry)
        return entry

    def add_note(self, session: Session, *, pipeline_id: uuid.UUID, notes: str, logged_by: str) -> PipelineActivity:
        text = (notes or "").strip()
        if not text:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="notes must not be empty")
        if session.get(Pipeline, pipeline_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")
        entry = self.append(session, pipeline_id=pipeline_id, activity_type="note", logged_by=logged_by, notes=text)
        session.commit()
        session.refresh(entry)
        return entry

    def list_activities(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
        activity_type: str | None = None,
    ) -> dict[str, Any]:
        if activity_type is not None and activity_type not in ACTIVITY_TYPES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"invalid activity type: {activity_type}")
        if session.get(Pipeline, pipeline_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline not found")

        filters = [PipelineActivity.pipeline_id == pipeline_id]
        if activity_type is not None:
            filters.append(PipelineActivity.activity_type == activity_type)

        total = int(session.scalar(select(func.count()).select_from(PipelineActivity).where(*filters)) or 0)
        rows = session.scalars(
            select(PipelineActivity)
            .where(*filters)
            .order_by(PipelineActivity.logged_at.desc(), PipelineActivity.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return {"data": list(rows), "total": total, "has_more": offset + limit < total}


activity_log = ActivityLogService()
