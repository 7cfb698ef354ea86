from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import ActorUser
from app.core.cache import InMemoryCache, set_cache
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.pipelines import jobs
from app.pipelines.api import get_current_user as pipelines_get_current_user
from app.pipelines.models import MonthlyForecast, Pipeline, PipelineActivity, QuarterlySheet
from app.pipelines.sheets.a1 import column_letter
from app.pipelines.sheets.client import InMemorySheetsClient, set_sheets_client
from app.pipelines.sheets.columns import SALES_COLUMNS

SHEET_URL = "https://docs.google.com/spreadsheets/d/1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789/edit#gid=0"
DOCUMENT_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789"


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("SHEET_SYNC_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_cache(InMemoryCache())
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def sheets_client() -> Generator[InMemorySheetsClient, None, None]:
    client = InMemorySheetsClient()
    set_sheets_client(client)
    yield client
    set_sheets_client(None)


@pytest.fixture()
def client(db_session: Session, sheets_client: InMemorySheetsClient) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            permissions={"pipelines.read", "pipelines.write", "pipelines.sync", "pipelines.sheets.manage"},
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipelines_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _register(client: TestClient, **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"year": 2025, "quarter": 1, "group": "sales", "spreadsheet_url": SHEET_URL}
    body.update(overrides)
    response = client.post("/api/pipelines/quarterly-sheets", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _pipeline(session: Session, sheet_id: str, **overrides: Any) -> Pipeline:
    values: dict[str, Any] = {
        "group": "sales",
        "quarterly_sheet_id": uuid.UUID(sheet_id),
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
    session.commit()
    return pipeline


def _webhook(client: TestClient, sheet: dict[str, Any], **overrides: Any):
    body: dict[str, Any] = {
        "token": sheet["webhook_token"],
        "spreadsheet_id": sheet["spreadsheet_id"],
        "sheet_name": sheet["sheet_name"],
        "trigger_type": "edit",
        "changed_rows": [3],
    }
    body.update(overrides)
    return client.post("/api/pipelines/webhook", json=body)


def _seed_row(sheets_client: InMemorySheetsClient, sheet: dict[str, Any], values: dict[str, Any]) -> None:
    row: list[Any] = [""] * SALES_COLUMNS.width
    for field_name, value in values.items():
        row[SALES_COLUMNS.get(field_name).index] = value
    sheets_client.seed(sheet["spreadsheet_id"], sheet["sheet_name"], [["ID"], [""], row])


def test_register_sheet_derives_identifiers(client: TestClient) -> None:
    sheet = _register(client)

    assert sheet["spreadsheet_id"] == DOCUMENT_ID
    assert sheet["sheet_name"] == "SEA_SALES_Q1_2025"
    assert len(sheet["webhook_token"]) == 64
    assert sheet["sync_status"] == "active"
    assert sheet["created_by"] == "admin-1"
    assert sheet["pipeline_count"] == 0

    bare = _register(client, quarter=2, group="CS", spreadsheet_url=DOCUMENT_ID, sheet_name="  Q2 tracker ")
    assert bare["group"] == "cs"
    assert bare["spreadsheet_id"] == DOCUMENT_ID
    assert bare["sheet_name"] == "Q2 tracker"
    assert bare["webhook_token"] != sheet["webhook_token"]


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"quarter": 5}, "quarter must be between 1 and 4"),
        ({"group": "marketing"}, "group must be one of: sales, cs"),
        ({"spreadsheet_url": "not a sheet"}, "spreadsheet reference must be a sheet URL or document id"),
    ],
)
def test_register_sheet_validation(client: TestClient, overrides: dict[str, Any], message: str) -> None:
    body: dict[str, Any] = {"year": 2025, "quarter": 1, "group": "sales", "spreadsheet_url": SHEET_URL}
    body.update(overrides)

    response = client.post("/api/pipelines/quarterly-sheets", json=body)

    assert response.status_code == 422
    assert response.json()["code"] == "pipeline_sheet_create_failed"
    assert response.json()["message"] == message


def test_register_duplicate_quarter_conflicts(client: TestClient) -> None:
    _register(client)

    response = client.post(
        "/api/pipelines/quarterly-sheets",
        json={"year": 2025, "quarter": 1, "group": "sales", "spreadsheet_url": SHEET_URL},
    )

    assert response.status_code == 409
    assert response.json()["code"] == "pipeline_sheet_create_failed"


def test_list_reports_pipeline_counts(client: TestClient, db_session: Session) -> None:
    sales = _register(client)
    _register(client, group="cs")
    _pipeline(db_session, sales["id"])
    _pipeline(db_session, sales["id"], poc="Bob")

    listed = client.get("/api/pipelines/quarterly-sheets")
    assert listed.status_code == 200
    counts = {item["group"]: item["pipeline_count"] for item in listed.json()}
    assert counts == {"sales": 2, "cs": 0}

    filtered = client.get("/api/pipelines/quarterly-sheets", params={"group": "cs"})
    assert [item["group"] for item in filtered.json()] == ["cs"]


def test_update_and_rotate_token(client: TestClient) -> None:
    sheet = _register(client)

    paused = client.patch(f"/api/pipelines/quarterly-sheets/{sheet['id']}", json={"sync_status": "paused"})
    assert paused.status_code == 200
    assert paused.json()["sync_status"] == "paused"

    blank = client.patch(f"/api/pipelines/quarterly-sheets/{sheet['id']}", json={"sheet_name": "  "})
    assert blank.status_code == 422
    assert blank.json()["code"] == "pipeline_sheet_update_failed"

    immutable = client.patch(f"/api/pipelines/quarterly-sheets/{sheet['id']}", json={"group": "cs"})
    assert immutable.status_code == 422

    rotated = client.post(f"/api/pipelines/quarterly-sheets/{sheet['id']}/rotate-token")
    assert rotated.status_code == 200
    assert rotated.json()["webhook_token"] != sheet["webhook_token"]
    assert len(rotated.json()["webhook_token"]) == 64

    stale = _webhook(client, sheet)
    assert stale.status_code == 401


def test_delete_sheet_cascades_to_pipelines_but_not_the_document(
    client: TestClient,
    db_session: Session,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _register(client)
    first = _pipeline(db_session, sheet["id"])
    second = _pipeline(db_session, sheet["id"], poc="Bob")
    for pipeline in (first, second):
        client.post(f"/api/pipelines/{pipeline.id}/recalculate")
        client.post(f"/api/pipelines/{pipeline.id}/activities", json={"notes": "tracked"})
    sheets_client.seed(sheet["spreadsheet_id"], sheet["sheet_name"], [[str(first.id)], [str(second.id)]], start_row=3)

    response = client.delete(f"/api/pipelines/quarterly-sheets/{sheet['id']}")

    assert response.status_code == 200
    assert response.json() == {"status": "deleted", "pipelines_deleted": 2}
    db_session.expire_all()
    assert db_session.scalar(select(func.count()).select_from(Pipeline)) == 0
    assert db_session.scalar(select(func.count()).select_from(MonthlyForecast)) == 0
    assert db_session.scalar(select(func.count()).select_from(PipelineActivity)) == 0
    assert db_session.get(QuarterlySheet, uuid.UUID(sheet["id"])) is None
    assert sheets_client.row(sheet["spreadsheet_id"], sheet["sheet_name"], 3)[0] == str(first.id)
    deleted = [item for item in events.published_events if item["event_type"] == "pipelines.sheet.deleted"]
    assert deleted[-1]["payload"]["pipelines_deleted"] == 2


def test_manual_sync_endpoint_pushes_and_previews(
    client: TestClient,
    db_session: Session,
    sheets_client: InMemorySheetsClient,
) -> None:
    sheet = _register(client)
    sheets_client.seed(sheet["spreadsheet_id"], sheet["sheet_name"], [["ID"], [""]])
    _pipeline(db_session, sheet["id"])
    _pipeline(db_session, sheet["id"], poc="Bob")

    pushed = client.post(f"/api/pipelines/quarterly-sheets/{sheet['id']}/sync", json={"direction": "outbound"})

    assert pushed.status_code == 200
    assert pushed.json()["direction"] == "outbound"
    assert pushed.json()["created"] == 2
    assert pushed.json()["sheet_id"] == sheet["id"]
    ids = [row[0] for row in sheets_client.rows(sheet["spreadsheet_id"], sheet["sheet_name"])[2:]]
    assert len(ids) == 2

    new_id = uuid.uuid4()
    sheets_client.batch_update_values(
        sheet["spreadsheet_id"],
        [{"range": f"'{sheet['sheet_name']}'!A5:D5", "values": [[str(new_id), "", "", "Dana"]]}],
    )
    sheets_client.batch_update_values(
        sheet["spreadsheet_id"],
        [{"range": f"'{sheet['sheet_name']}'!{column_letter(SALES_COLUMNS.get('publisher').index)}5", "values": [["Fresh Media"]]}],
    )
    preview = client.post(
        f"/api/pipelines/quarterly-sheets/{sheet['id']}/sync",
        json={"direction": "inbound", "dry_run": True},
    )

    assert preview.status_code == 200
    assert preview.json()["dry_run"] is True
    assert preview.json()["created"] == 1
    assert db_session.get(Pipeline, new_id) is None


def test_sync_requires_sync_permission(client: TestClient) -> None:
    sheet = _register(client)
    app.dependency_overrides[pipelines_get_current_user] = lambda: ActorUser(user_id="viewer", permissions={"pipelines.read"})

    response = client.post(f"/api/pipelines/quarterly-sheets/{sheet['id']}/sync", json={"direction": "inbound"})

    assert response.status_code == 403
    assert response.json()["code"] == "pipeline_sheet_sync_failed"


def test_webhook_health(client: TestClient) -> None:
    response = client.get("/api/pipelines/webhook")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_webhook_rejects_bad_token_mismatch_and_inactive_sheet(client: TestClient) -> None:
    sheet = _register(client)

    bad_token = _webhook(client, sheet, token="f" * 64)
    assert bad_token.status_code == 401
    assert bad_token.json()["code"] == "pipeline_webhook_rejected"

    mismatch = _webhook(client, sheet, spreadsheet_id="some-other-document")
    assert mismatch.status_code == 403

    client.patch(f"/api/pipelines/quarterly-sheets/{sheet['id']}", json={"sync_status": "paused"})
    paused = _webhook(client, sheet)
    assert paused.status_code == 423
    assert paused.json()["message"] == "Sheet sync is paused"


def test_webhook_for_another_tab_is_ignored(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    sheet = _register(client)
    enqueued: list[Any] = []
    monkeypatch.setattr(jobs, "enqueue_inbound_sync", lambda *args: enqueued.append(args))

    response = _webhook(client, sheet, sheet_name="Scratch")

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert enqueued == []


def test_webhook_enqueues_inbound_sync(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    sheet = _register(client)
    enqueued: list[Any] = []
    monkeypatch.setattr(jobs, "enqueue_inbound_sync", lambda *args: enqueued.append(args))

    response = _webhook(client, sheet, changed_rows=[3, 4])

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "sheet_id": sheet["id"], "summary": None}
    assert enqueued == [(uuid.UUID(sheet["id"]), [3, 4])]


def test_webhook_runs_inbound_sync_inline(
    client: TestClient,
    db_session: Session,
    sheets_client: InMemorySheetsClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTO_RUN_JOBS", "true")
    get_settings.cache_clear()
    sheet = _register(client)
    new_id = uuid.uuid4()
    _seed_row(
        sheets_client,
        sheet,
        {"id": str(new_id), "poc": "Alice", "publisher": "Example Media", "status": "【C】"},
    )

    response = _webhook(client, sheet)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["summary"]["created"] == 1
    created = db_session.get(Pipeline, new_id)
    assert created is not None
    assert created.status == "interest"
    assert created.sheet_row_number == 3
