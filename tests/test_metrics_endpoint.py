from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import ActorUser, AuthUser, get_current_user as auth_get_current_user
from app.core.cache import InMemoryCache, set_cache
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.pipelines.api import get_current_user as pipelines_get_current_user
from app.pipelines.models import Pipeline, QuarterlySheet
from app.pipelines.sheets.client import InMemorySheetsClient, set_sheets_client


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("SHEET_SYNC_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_cache(InMemoryCache())
    set_sheets_client(InMemorySheetsClient())
    yield
    set_sheets_client(None)
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_pipelines_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"pipelines.read", "pipelines.write", "pipelines.sync"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipelines_get_current_user] = override_pipelines_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_sync_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["sheet_sync"]["backend"] == "inmemory"

    sheet = QuarterlySheet(
        year=2025,
        quarter=1,
        group="sales",
        spreadsheet_id="doc-metrics",
        sheet_name="SEA_SALES_Q1_2025",
        webhook_token="m" * 64,
        created_by="metrics-user",
    )
    db_session.add(sheet)
    db_session.commit()
    pipeline = Pipeline(
        group="sales",
        quarterly_sheet_id=sheet.id,
        poc="Alice",
        publisher="Example Media",
        status="distribution_started",
        max_gross=Decimal("3000"),
        revenue_share=Decimal("50"),
        progress_percent=100,
        actual_starting_date=date.today() - timedelta(days=2),
        created_by="metrics-user",
    )
    db_session.add(pipeline)
    db_session.commit()

    recalculated = client.post(f"/api/pipelines/{pipeline.id}/recalculate")
    assert recalculated.status_code == 200

    early = client.post(f"/api/pipelines/{pipeline.id}/confirm-transition", json={"action": "confirm"})
    assert early.status_code == 409

    pushed = client.post(f"/api/pipelines/quarterly-sheets/{sheet.id}/sync", json={"direction": "outbound"})
    assert pushed.status_code == 200
    assert pushed.json()["failed"] == 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_recalculations_total" in body
    assert "sheet_sync_run_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/pipelines/{id}/confirm-transition"' in body
    assert 'action="confirm",outcome="dwell_time_not_met"' in body
    assert 'direction="outbound",error_type="sheet_not_found"' in body


def test_metrics_require_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_me_lists_pipeline_permissions(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(
        sub="editor", roles=["pipelines.write", "system.metrics.read", "pipelines.read"]
    )

    body = client.get("/me").json()

    assert body["sub"] == "editor"
    assert body["pipeline_permissions"] == ["pipelines.read", "pipelines.write"]
