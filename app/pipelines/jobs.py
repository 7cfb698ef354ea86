from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.pipelines.models import Pipeline
from app.pipelines.registry import quarterly_sheet_service
from app.pipelines.sheets.sync import SheetSyncEngine, SyncSummary, sync_engine

logger = logging.getLogger(__name__)


def run_inbound_sync(
    session: Session,
    sheet_id: uuid.UUID,
    *,
    changed_rows: Iterable[int] | None = None,
    dry_run: bool = False,
    engine: SheetSyncEngine | None = None,
) -> SyncSummary:
    sheet = quarterly_sheet_service.get(session, sheet_id)
    return (engine or sync_engine).pull_sheet(session, sheet, changed_rows=changed_rows, dry_run=dry_run)


def run_sheet_push(
    session: Session,
    sheet_id: uuid.UUID,
    *,
    dry_run: bool = False,
    engine: SheetSyncEngine | None = None,
) -> SyncSummary:
    sheet = quarterly_sheet_service.get(session, sheet_id)
    pipelines = session.scalars(
        select(Pipeline).where(Pipeline.quarterly_sheet_id == sheet.id).order_by(Pipeline.created_at.desc(), Pipeline.id)
    ).all()
    summary = (engine or sync_engine).push_pipelines(session, pipelines, dry_run=dry_run)
    summary.sheet_id = str(sheet.id)
    return summary


def run_outbound_push(
    session: Session,
    pipeline_ids: Iterable[uuid.UUID],
    *,
    engine: SheetSyncEngine | None = None,
) -> SyncSummary:
    pipelines = []
    for pipeline_id in pipeline_ids:
        pipeline = session.get(Pipeline, pipeline_id)
        if pipeline is None:
            logger.info("sheet_sync.pipeline_missing", extra={"pipeline_id": str(pipeline_id)})
            continue
        pipelines.append(pipeline)
    return (engine or sync_engine).push_pipelines(session, pipelines)


def enqueue_inbound_sync(sheet_id: uuid.UUID, changed_rows: list[int] | None = None) -> None:
    from app.core.celery_app import sync_sheet_inbound_task

    try:
        sync_sheet_inbound_task.delay(str(sheet_id), changed_rows, correlation_id=get_correlation_id())
    except Exception as exc:
        logger.exception("sheet_sync.enqueue_failed", extra={"sheet_id": str(sheet_id), "direction": "inbound"})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="sync queue unavailable") from exc


def enqueue_outbound_push(pipeline_ids: Iterable[uuid.UUID]) -> None:
    from app.core.celery_app import push_pipelines_outbound_task

    push_pipelines_outbound_task.delay([str(item) for item in pipeline_ids], correlation_id=get_correlation_id())
