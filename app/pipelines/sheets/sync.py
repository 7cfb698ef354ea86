"""Row-level synchronization between pipelines and their quarterly sheets.

Runs are strictly sequential: one blocking request per pipeline, separated by
``sheet_sync_delay_seconds``. Outbound writes always overwrite the mapped
cells of the row; inbound reads never delete pipelines missing from the
sheet. A failure on one pipeline or row is recorded in the run summary and
the run moves on.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from fastapi import HTTPException
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import sync_run
from app.core.auth import SYSTEM_SYNC_ACTOR, ActorUser
from app.core.config import Settings, get_settings
from app.events import publish
from app.metrics import observe_sheet_sync_error, observe_sheet_sync_row, observe_sheet_sync_run
from app.pipelines.activity import activity_log
from app.pipelines.lifecycle import apply_changes, recompute
from app.pipelines.models import Pipeline, QuarterlySheet
from app.pipelines.registry import QuarterlySheetService, SheetTarget, quarterly_sheet_service
from app.pipelines.sheets.a1 import cell_range, column_letter, column_range
from app.pipelines.sheets.client import SheetsApiError, SheetsClient, get_sheets_client
from app.pipelines.sheets.columns import ColumnMap, column_map_for
from app.pipelines.sheets.formatters import (
    RowValidationError,
    cells_equal,
    is_blank_row,
    pipeline_to_cells,
    raw_row_dict,
    row_to_fields,
)
from app.pipelines.stages import MILESTONE_FIELDS, PipelineStatus, status_label

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.pipelines.sheets.sync")

# columns A..D: identifier, key, classification, poc
_SCAN_LAST_COLUMN = 3
_OCCUPANCY_COLUMNS = (0, 2, 3)


@dataclass(slots=True)
class SyncSummary:
    direction: str
    sheet_id: str | None = None
    dry_run: bool = False
    status: str = "completed"
    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    changes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def counts(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "sheet_id": self.sheet_id,
            "dry_run": self.dry_run,
            "status": self.status,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    def log_extra(self) -> dict[str, Any]:
        # LogRecord reserves "created"
        extra = self.counts()
        extra["rows_created"] = extra.pop("created")
        return extra


@dataclass(slots=True)
class _RowIndex:
    """Identifier-to-row map for one tab, valid for a single run only."""

    rows_by_id: dict[str, int]
    occupied: set[int]
    cursor: int

    def allocate(self) -> int:
        while self.cursor in self.occupied:
            self.cursor += 1
        row_number = self.cursor
        self.occupied.add(row_number)
        self.cursor += 1
        return row_number


def _cell(row: list[Any], index: int) -> Any:
    return row[index] if index < len(row) else ""


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


class SheetSyncEngine:
    def __init__(
        self,
        client: SheetsClient | None = None,
        *,
        registry: QuarterlySheetService | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.registry = registry or quarterly_sheet_service
        self._settings = settings
        self._sleep = sleep

    @property
    def client(self) -> SheetsClient:
        return self._client or get_sheets_client()

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def _scan(self, target: SheetTarget) -> _RowIndex:
        start = self.settings.sheet_data_start_row
        rows = self.client.get_values(
            target.spreadsheet_id,
            column_range(target.sheet_name, 0, _SCAN_LAST_COLUMN, start),
        )
        rows_by_id: dict[str, int] = {}
        occupied: set[int] = set()
        first_empty: int | None = None
        for offset, row in enumerate(rows):
            row_number = start + offset
            identifier = str(_cell(row, 0)).strip()
            if identifier and identifier not in rows_by_id:
                rows_by_id[identifier] = row_number
            if all(_blank(_cell(row, index)) for index in _OCCUPANCY_COLUMNS):
                if first_empty is None:
                    first_empty = row_number
            else:
                occupied.add(row_number)
        cursor = first_empty if first_empty is not None else start + len(rows)
        return _RowIndex(rows_by_id=rows_by_id, occupied=occupied, cursor=cursor)

    def _find_row(self, target: SheetTarget, pipeline_id: uuid.UUID) -> int | None:
        return self._scan(target).rows_by_id.get(str(pipeline_id))

    def _record_error(
        self,
        summary: SyncSummary,
        exc: SheetsApiError,
        *,
        pipeline_id: uuid.UUID | None = None,
        row_number: int | None = None,
    ) -> None:
        summary.failed += 1
        summary.errors.append(
            {
                "pipeline_id": str(pipeline_id) if pipeline_id else None,
                "row_number": row_number,
                "error_type": exc.error_type,
                "message": str(exc),
            }
        )
        observe_sheet_sync_error(summary.direction, exc.error_type)
        observe_sheet_sync_row(summary.direction, "failed")
        logger.warning(
            "sheet_sync.pipeline_failed",
            extra={
                "direction": summary.direction,
                "pipeline_id": str(pipeline_id) if pipeline_id else None,
                "row_number": row_number,
                "error_type": exc.error_type,
                "error": str(exc),
            },
        )

    def _diff_row(self, target: SheetTarget, row_number: int, cells: dict[int, Any], column_map: ColumnMap) -> list[dict[str, Any]]:
        last_column = column_map.width - 1
        current_rows = self.client.get_values(
            target.spreadsheet_id,
            column_range(target.sheet_name, 0, last_column, row_number, row_number),
        )
        current = current_rows[0] if current_rows else []
        fields_by_index = {column.index: column.field for column in column_map.writable}
        diffs: list[dict[str, Any]] = []
        for index, desired in sorted(cells.items()):
            existing = _cell(current, index)
            if not cells_equal(existing, desired):
                diffs.append(
                    {
                        "column": column_letter(index),
                        "field": fields_by_index.get(index),
                        "current": existing,
                        "desired": desired,
                    }
                )
        return diffs

    def push_pipelines(self, session: Session, pipelines: Iterable[Pipeline], *, dry_run: bool = False) -> SyncSummary:
        """Write each pipeline's mapped cells to its sheet row, allocating rows as needed."""

        summary = SyncSummary(direction="outbound", dry_run=dry_run)
        started = time.perf_counter()
        indexes: dict[uuid.UUID, _RowIndex | SheetsApiError] = {}
        requests_sent = 0

        with sync_run(), tracer.start_as_current_span("pipelines.sheet_sync.outbound") as span:
            span.set_attribute("dry_run", dry_run)
            try:
                for pipeline in pipelines:
                    summary.total += 1
                    target = self.registry.resolve_target(session, pipeline.quarterly_sheet_id)
                    if target is None or not target.is_active:
                        summary.skipped += 1
                        observe_sheet_sync_row("outbound", "skipped")
                        continue

                    if requests_sent and self.settings.sheet_sync_delay_seconds > 0:
                        self._sleep(self.settings.sheet_sync_delay_seconds)
                    requests_sent += 1

                    index = indexes.get(target.sheet_id)
                    if index is None:
                        try:
                            index = self._scan(target)
                        except SheetsApiError as exc:
                            index = exc
                        indexes[target.sheet_id] = index
                    if isinstance(index, SheetsApiError):
                        self._record_error(summary, index, pipeline_id=pipeline.id)
                        continue

                    self._push_one(session, pipeline, target, index, summary)

                if not dry_run:
                    session.commit()
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                raise
            finally:
                observe_sheet_sync_run("outbound", time.perf_counter() - started)

            span.set_attribute("failed", summary.failed)

        if summary.failed and summary.failed == summary.total - summary.skipped:
            summary.status = "failed"
        logger.info("sheet_sync.finished", extra=summary.log_extra())
        return summary

    def _push_one(
        self,
        session: Session,
        pipeline: Pipeline,
        target: SheetTarget,
        index: _RowIndex,
        summary: SyncSummary,
    ) -> None:
        column_map = column_map_for(target.group)
        cells = pipeline_to_cells(pipeline, column_map)
        row_number = index.rows_by_id.get(str(pipeline.id))
        is_new = row_number is None
        if row_number is None:
            row_number = index.allocate()
            index.rows_by_id[str(pipeline.id)] = row_number

        has_diff = True
        try:
            if summary.dry_run:
                diffs = self._diff_row(target, row_number, cells, column_map)
                has_diff = bool(diffs)
                if diffs:
                    summary.changes.append(
                        {
                            "pipeline_id": str(pipeline.id),
                            "row_number": row_number,
                            "action": "create" if is_new else "update",
                            "cells": diffs,
                        }
                    )
            else:
                data = [
                    {"range": cell_range(target.sheet_name, column, row_number), "values": [[value]]}
                    for column, value in sorted(cells.items())
                ]
                self.client.batch_update_values(target.spreadsheet_id, data)
                if pipeline.sheet_row_number != row_number:
                    pipeline.sheet_row_number = row_number
        except SheetsApiError as exc:
            self._record_error(summary, exc, pipeline_id=pipeline.id, row_number=row_number)
            return

        if is_new:
            summary.created += 1
            outcome = "created"
        elif not has_diff:
            summary.unchanged += 1
            outcome = "unchanged"
        else:
            summary.updated += 1
            outcome = "updated"
        observe_sheet_sync_row("outbound", outcome)
        logger.debug(
            "sheet_sync.pipeline_pushed",
            extra={"pipeline_id": str(pipeline.id), "row_number": row_number, "action": outcome},
        )

    def push_pipeline(self, session: Session, pipeline: Pipeline, *, dry_run: bool = False) -> SyncSummary:
        return self.push_pipelines(session, [pipeline], dry_run=dry_run)

    def delete_pipeline_row(self, session: Session, pipeline_id: uuid.UUID, sheet_id: uuid.UUID | None) -> bool:
        """Best-effort removal of a deleted pipeline's row; never raises for sheet failures."""

        target = self.registry.resolve_target(session, sheet_id)
        if target is None or not target.is_active:
            return False
        try:
            row_number = self._find_row(target, pipeline_id)
            if row_number is None:
                return False
            self.client.delete_row(target.spreadsheet_id, target.sheet_name, row_number)
        except SheetsApiError as exc:
            observe_sheet_sync_error("delete", exc.error_type)
            logger.warning(
                "sheet_sync.row_delete_failed",
                extra={"pipeline_id": str(pipeline_id), "sheet_id": str(sheet_id), "error_type": exc.error_type, "error": str(exc)},
            )
            return False
        logger.info("sheet_sync.row_deleted", extra={"pipeline_id": str(pipeline_id), "row_number": row_number})
        return True

    def pull_sheet(
        self,
        session: Session,
        sheet: QuarterlySheet,
        *,
        changed_rows: Iterable[int] | None = None,
        dry_run: bool = False,
        actor: ActorUser = SYSTEM_SYNC_ACTOR,
        today: date | None = None,
    ) -> SyncSummary:
        """Read the sheet's rows into pipelines, creating unknown identifiers."""

        summary = SyncSummary(direction="inbound", sheet_id=str(sheet.id), dry_run=dry_run)
        if sheet.sync_status != "active":
            summary.status = "skipped"
            logger.info("sheet_sync.skipped", extra=summary.log_extra())
            return summary

        column_map = column_map_for(sheet.group)
        start = self.settings.sheet_data_start_row
        only_rows = set(changed_rows) if changed_rows else None
        started = time.perf_counter()

        with sync_run(), tracer.start_as_current_span("pipelines.sheet_sync.inbound") as span:
            span.set_attribute("sheet_id", str(sheet.id))
            span.set_attribute("dry_run", dry_run)
            try:
                try:
                    rows = self.client.get_values(
                        sheet.spreadsheet_id,
                        column_range(sheet.sheet_name, 0, column_map.width - 1, start),
                    )
                except SheetsApiError as exc:
                    self._record_error(summary, exc)
                    summary.status = "failed"
                    span.set_status(Status(StatusCode.ERROR))
                    return summary

                seen: set[uuid.UUID] = set()
                for offset, row in enumerate(rows):
                    row_number = start + offset
                    if only_rows is not None and row_number not in only_rows:
                        continue
                    if is_blank_row(row):
                        continue
                    summary.total += 1
                    self._pull_row(session, sheet, column_map, row, row_number, seen, summary, actor=actor, today=today)

                if not dry_run:
                    self.registry.mark_synced(session, sheet.id)
            finally:
                observe_sheet_sync_run("inbound", time.perf_counter() - started)

        if summary.failed and summary.failed == summary.total:
            summary.status = "failed"
        if not dry_run:
            publish(
                {
                    "event_type": "pipelines.sheet.synced",
                    "payload": {"sheet_id": str(sheet.id), **{k: v for k, v in summary.counts().items() if k != "sheet_id"}},
                }
            )
        logger.info("sheet_sync.finished", extra=summary.log_extra())
        return summary

    def _pull_row(
        self,
        session: Session,
        sheet: QuarterlySheet,
        column_map: ColumnMap,
        row: list[Any],
        row_number: int,
        seen: set[uuid.UUID],
        summary: SyncSummary,
        *,
        actor: ActorUser,
        today: date | None,
    ) -> None:
        raw = raw_row_dict(row)
        try:
            parsed = row_to_fields(row, column_map, row_number)
            if parsed.pipeline_id in seen:
                raise RowValidationError(row_number, "duplicate_identifier", "pipeline id appears more than once in the sheet", "id")
        except RowValidationError as exc:
            summary.failed += 1
            summary.errors.append(exc.to_row_error(raw))
            observe_sheet_sync_row("inbound", "failed")
            logger.warning(
                "sheet_sync.row_invalid",
                extra={"sheet_id": str(sheet.id), "row_number": row_number, "error_type": exc.code, "error": str(exc)},
            )
            return
        seen.add(parsed.pipeline_id)

        fields = dict(parsed.fields)
        pipeline = session.get(Pipeline, parsed.pipeline_id)
        try:
            if pipeline is None:
                self._create_from_row(session, sheet, parsed.pipeline_id, fields, row_number, summary, actor=actor, today=today)
                return

            if fields.get("status") == PipelineStatus.WON and pipeline.status != PipelineStatus.WON.value:
                fields.pop("status")
                summary.warnings.append(
                    {
                        "row_number": row_number,
                        "pipeline_id": str(pipeline.id),
                        "message": f"status {status_label(PipelineStatus.WON)} requires the confirm action; status left unchanged",
                    }
                )
            if "status" in fields:
                fields["status"] = fields["status"].value

            changes = {name: value for name, value in fields.items() if getattr(pipeline, name) != value}
            # a blank milestone cell never clears a date the lifecycle already stamped
            for name in MILESTONE_FIELDS:
                if name in changes and changes[name] is None:
                    del changes[name]
            if pipeline.quarterly_sheet_id is None:
                changes["quarterly_sheet_id"] = sheet.id

            if summary.dry_run:
                if changes:
                    summary.updated += 1
                    summary.changes.append(
                        {
                            "pipeline_id": str(pipeline.id),
                            "row_number": row_number,
                            "action": "update",
                            "fields": {name: str(value) if value is not None else None for name, value in changes.items()},
                        }
                    )
                else:
                    summary.unchanged += 1
                return

            changed = apply_changes(session, pipeline, changes, actor_id=actor.user_id, today=today)
            pipeline.sheet_row_number = row_number
            session.commit()
        except (HTTPException, SQLAlchemyError) as exc:
            session.rollback()
            message = str(exc.detail) if isinstance(exc, HTTPException) else str(exc)
            summary.failed += 1
            summary.errors.append(RowValidationError(row_number, "apply_failed", message).to_row_error(raw))
            observe_sheet_sync_row("inbound", "failed")
            logger.warning(
                "sheet_sync.row_failed",
                extra={"sheet_id": str(sheet.id), "row_number": row_number, "error": message},
            )
            return

        outcome = "updated" if changed else "unchanged"
        if changed:
            summary.updated += 1
        else:
            summary.unchanged += 1
        observe_sheet_sync_row("inbound", outcome)

    def _create_from_row(
        self,
        session: Session,
        sheet: QuarterlySheet,
        pipeline_id: uuid.UUID,
        fields: dict[str, Any],
        row_number: int,
        summary: SyncSummary,
        *,
        actor: ActorUser,
        today: date | None,
    ) -> None:
        if summary.dry_run:
            summary.created += 1
            summary.changes.append({"pipeline_id": str(pipeline_id), "row_number": row_number, "action": "create"})
            return

        stage = fields.pop("status", PipelineStatus.EXPLORATION)
        pipeline = Pipeline(
            id=pipeline_id,
            group=sheet.group,
            quarterly_sheet_id=sheet.id,
            sheet_row_number=row_number,
            status=stage.value,
            created_by=actor.user_id,
            updated_by=actor.user_id,
            extra_metadata={"source": "sheet", "source_row": row_number},
            **fields,
        )
        session.add(pipeline)
        activity_log.append(
            session,
            pipeline_id=pipeline_id,
            activity_type="status_change",
            field_changed="status",
            new_value=status_label(stage),
            notes=f"created from {sheet.sheet_name} row {row_number}",
            logged_by=actor.user_id,
        )
        recompute(session, pipeline, today=today)
        session.commit()
        summary.created += 1
        observe_sheet_sync_row("inbound", "created")


sync_engine = SheetSyncEngine()
