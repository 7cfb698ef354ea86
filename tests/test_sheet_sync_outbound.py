from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import InMemoryCache
from app.core.config import Settings
from app.core.database import Base
from app.pipelines.lifecycle import recompute
from app.pipelines.models import Pipeline, QuarterlySheet
from app.pipelines.registry import QuarterlySheetService
from app.pipelines.sheets.client import InMemorySheetsClient, SheetsApiError
from app.pipelines.sheets.columns import SALES_COLUMNS
from app.pipelines.sheets.sync import SheetSyncEngine

HEADER_ROWS = [["ID", "Key", "Classification", "POC"], ["", "", "", ""]]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sheets_client() -> InMemorySheetsClient:
    return InMemorySheetsClient()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def engine(sheets_client: InMemorySheetsClient, sleeps: list[float]) -> SheetSyncEngine:
    return SheetSyncEngine(
        sheets_client,
        registry=QuarterlySheetService(cache=InMemoryCache()),
        settings=Settings(sheet_data_start_row=3, sheet_sync_delay_seconds=0.5),
        sleep=sleeps.append,
    )


def _sheet(
    session: Session,
    *,
    group: str = "sales",
    spreadsheet_id: str = "doc-sales",
    sync_status: str = "active",
) -> QuarterlySheet:
    sheet = QuarterlySheet(
        year=2025,
        quarter=1,
        group=group,
        spreadsheet_id=spreadsheet_id,
        sheet_name=f"SEA_{group.upper()}_Q1_2025",
        webhook_token=uuid.uuid4().hex,
        sync_status=sync_status,
        created_by="user-1",
    )
    session.add(sheet)
    session.commit()
    return sheet


def _pipeline(session: Session, sheet: QuarterlySheet | None, **overrides: Any) -> Pipeline:
    values: dict[str, Any] = {
        "group": sheet.group if sheet else "sales",
        "quarterly_sheet_id": sheet.id if sheet else None,
        "poc": "Alice",
        "publisher": "Example Media",
        "status": "agreement",
        "max_gross": Decimal("3000"),
        "revenue_share": Decimal("50"),
        "progress_percent": 100,
        "created_by": "user-1",
    }
    values.update(overrides)
    pipeline = Pipeline(**values)
    session.add(pipeline)
    recompute(session, pipeline, today=date(2025, 5, 1))
    session.commit()
    return pipeline


def test_push_allocates_first_empty_rows_and_leaves_formula_cells(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
    sleeps: list[float],
) -> None:
    sheet = _sheet(db_session)
    sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    sheets_client.seed(
        sheet.spreadsheet_id,
        sheet.sheet_name,
        [["someone-else", "", "Renewal", "Carol"], ["", "=A4&D4"]],
        start_row=3,
    )
    first = _pipeline(db_session, sheet)
    second = _pipeline(db_session, sheet, poc="Bob")

    summary = engine.push_pipelines(db_session, [first, second])

    assert summary.created == 2
    assert summary.failed == 0
    assert summary.status == "completed"
    assert sleeps == [0.5]
    assert first.sheet_row_number == 4
    assert second.sheet_row_number == 5

    row = sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 4)
    assert row[0] == str(first.id)
    assert row[1] == "=A4&D4"
    assert row[SALES_COLUMNS.get("poc").index] == "Alice"
    assert row[SALES_COLUMNS.get("status").index] == "【B】"
    assert row[SALES_COLUMNS.get("q_gross").index] == 9100.0
    assert row[SALES_COLUMNS.get("q_net_rev").index] == 4550.0
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 3)[0] == "someone-else"
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 5)[SALES_COLUMNS.get("poc").index] == "Bob"


def test_push_is_idempotent_and_dry_run_reports_cell_changes(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _sheet(db_session)
    sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    pipeline = _pipeline(db_session, sheet)

    engine.push_pipeline(db_session, pipeline)
    writes_after_first_push = sheets_client.write_requests

    unchanged = engine.push_pipeline(db_session, pipeline, dry_run=True)
    assert unchanged.unchanged == 1
    assert unchanged.changes == []
    assert sheets_client.write_requests == writes_after_first_push

    pipeline.poc = "Bob"
    db_session.commit()
    preview = engine.push_pipeline(db_session, pipeline, dry_run=True)

    assert preview.updated == 1
    assert preview.changes == [
        {
            "pipeline_id": str(pipeline.id),
            "row_number": 3,
            "action": "update",
            "cells": [{"column": "D", "field": "poc", "current": "Alice", "desired": "Bob"}],
        }
    ]
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 3)[3] == "Alice"

    applied = engine.push_pipeline(db_session, pipeline)
    assert applied.updated == 1
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 3)[3] == "Bob"
    assert len([row for row in sheets_client.rows(sheet.spreadsheet_id, sheet.sheet_name) if row and row[0]]) == 2


def test_dry_run_for_new_pipeline_previews_create_without_writing(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _sheet(db_session, group="cs", spreadsheet_id="doc-cs")
    sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    pipeline = _pipeline(db_session, sheet, actual_starting_date=date(2025, 4, 2))

    summary = engine.push_pipeline(db_session, pipeline, dry_run=True)

    assert summary.created == 1
    assert summary.changes[0]["action"] == "create"
    fields = {cell["field"] for cell in summary.changes[0]["cells"]}
    assert "actual_starting_date" in fields
    assert sheets_client.write_requests == 0
    assert pipeline.sheet_row_number is None


def test_push_skips_paused_sheets_and_unlinked_pipelines(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
    sleeps: list[float],
) -> None:
    paused = _sheet(db_session, sync_status="paused")
    linked = _pipeline(db_session, paused)
    unlinked = _pipeline(db_session, None)

    summary = engine.push_pipelines(db_session, [linked, unlinked])

    assert summary.total == 2
    assert summary.skipped == 2
    assert sheets_client.read_requests == 0
    assert sheets_client.write_requests == 0
    assert sleeps == []


def test_pause_and_rename_made_elsewhere_apply_despite_cached_target(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _sheet(db_session)
    sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    pipeline = _pipeline(db_session, sheet)

    first = engine.push_pipelines(db_session, [pipeline])
    assert first.skipped == 0
    assert engine.registry.cache.get(f"pipelines:sheet-target:{sheet.id}") is not None

    # another process pauses the sheet; this engine's cache is never invalidated
    db_session.execute(update(QuarterlySheet).where(QuarterlySheet.id == sheet.id).values(sync_status="paused"))
    db_session.commit()
    writes = sheets_client.write_requests

    paused = engine.push_pipelines(db_session, [pipeline])
    assert paused.skipped == 1
    assert sheets_client.write_requests == writes

    db_session.execute(
        update(QuarterlySheet).where(QuarterlySheet.id == sheet.id).values(sync_status="active", sheet_name="Renamed")
    )
    db_session.commit()
    sheets_client.seed(sheet.spreadsheet_id, "Renamed", HEADER_ROWS)

    resumed = engine.push_pipelines(db_session, [pipeline])
    assert resumed.skipped == 0
    assert resumed.failed == 0
    id_index = SALES_COLUMNS.get("id").index
    assert [row[id_index] for row in sheets_client.rows(sheet.spreadsheet_id, "Renamed")[2:]] == [str(pipeline.id)]


def test_one_sheet_failing_does_not_stop_the_run(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
) -> None:
    sales = _sheet(db_session)
    cs = _sheet(db_session, group="cs", spreadsheet_id="doc-cs")
    for sheet in (sales, cs):
        sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    failing = _pipeline(db_session, sales)
    healthy = _pipeline(db_session, cs)
    sheets_client.fail_next(SheetsApiError(429, "Quota exceeded for quota metric", "rate_limit"))

    summary = engine.push_pipelines(db_session, [failing, healthy])

    assert summary.failed == 1
    assert summary.created == 1
    assert summary.status == "completed"
    assert summary.errors[0]["pipeline_id"] == str(failing.id)
    assert summary.errors[0]["error_type"] == "rate_limit"
    assert healthy.sheet_row_number == 3
    assert failing.sheet_row_number is None


class _RejectFirstWrite(InMemorySheetsClient):
    def __init__(self) -> None:
        super().__init__()
        self.rejected = False

    def batch_update_values(self, spreadsheet_id: str, data: list[dict[str, Any]]) -> int:
        if not self.rejected:
            self.rejected = True
            raise SheetsApiError(403, "The caller does not have permission", "permission_denied")
        return super().batch_update_values(spreadsheet_id, data)


def test_write_failure_is_recorded_per_pipeline(db_session: Session) -> None:
    client = _RejectFirstWrite()
    engine = SheetSyncEngine(
        client,
        registry=QuarterlySheetService(cache=InMemoryCache()),
        settings=Settings(sheet_data_start_row=3, sheet_sync_delay_seconds=0),
    )
    sheet = _sheet(db_session)
    client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    first = _pipeline(db_session, sheet)
    second = _pipeline(db_session, sheet)

    summary = engine.push_pipelines(db_session, [first, second])

    assert summary.failed == 1
    assert summary.created == 1
    assert summary.errors[0]["error_type"] == "permission_denied"
    assert summary.errors[0]["row_number"] == 3
    assert second.sheet_row_number == 4
    assert client.row(sheet.spreadsheet_id, sheet.sheet_name, 4)[0] == str(second.id)


def test_missing_tab_fails_the_whole_run(
    db_session: Session,
    engine: SheetSyncEngine,
) -> None:
    sheet = _sheet(db_session)
    pipelines = [_pipeline(db_session, sheet), _pipeline(db_session, sheet)]

    summary = engine.push_pipelines(db_session, pipelines)

    assert summary.failed == 2
    assert summary.status == "failed"
    assert {item["error_type"] for item in summary.errors} == {"sheet_not_found"}


def test_delete_pipeline_row_removes_only_that_row(
    db_session: Session,
    engine: SheetSyncEngine,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _sheet(db_session)
    sheets_client.seed(sheet.spreadsheet_id, sheet.sheet_name, HEADER_ROWS)
    first = _pipeline(db_session, sheet)
    second = _pipeline(db_session, sheet)
    engine.push_pipelines(db_session, [first, second])

    assert engine.delete_pipeline_row(db_session, first.id, sheet.id) is True
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 3)[0] == str(second.id)
    assert engine.delete_pipeline_row(db_session, first.id, sheet.id) is False

    sheets_client.fail_next(SheetsApiError(None, "connection reset", "network_error"))
    assert engine.delete_pipeline_row(db_session, second.id, sheet.id) is False
    assert sheets_client.row(sheet.spreadsheet_id, sheet.sheet_name, 3)[0] == str(second.id)
