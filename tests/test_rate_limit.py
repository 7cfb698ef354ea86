from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import TokenBuckets, policy_for, reset_rate_limiter
from app.pipelines.api import get_current_user as pipelines_get_current_user
from app.pipelines.models import Pipeline


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_PIPELINE_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"pipelines.read", "pipelines.write"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipelines_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def pipeline(db_session: Session) -> Pipeline:
    item = Pipeline(group="sales", poc="Alice", publisher="Example Media", status="exploration", created_by="user-1")
    db_session.add(item)
    db_session.commit()
    return item


def _bearer(subject: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": subject, "roles": ["pipelines.write"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_mutating_pipeline_endpoints_are_rate_limited(client: TestClient, pipeline: Pipeline) -> None:
    responses = [
        client.post(f"/api/pipelines/{pipeline.id}/activities", json={"notes": f"note {index}"}) for index in range(5)
    ]

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None
    assert first_limited.headers.get("X-Correlation-Id") == body["correlation_id"]


def test_buckets_are_per_user(client: TestClient, pipeline: Pipeline) -> None:
    url = f"/api/pipelines/{pipeline.id}/activities"
    for index in range(3):
        assert client.post(url, json={"notes": f"a{index}"}, headers=_bearer("alice")).status_code == 201

    assert client.post(url, json={"notes": "a3"}, headers=_bearer("alice")).status_code == 429
    assert client.post(url, json={"notes": "b0"}, headers=_bearer("bob")).status_code == 201


def test_reads_and_webhook_are_not_rate_limited(client: TestClient, pipeline: Pipeline) -> None:
    created = client.post(f"/api/pipelines/{pipeline.id}/activities", json={"notes": "readable"})
    assert created.status_code == 201

    reads = [client.get(f"/api/pipelines/{pipeline.id}/activities") for _ in range(10)]
    assert all(response.status_code != 429 for response in reads)

    webhooks = [
        client.post("/api/pipelines/webhook", json={"token": "unknown", "spreadsheet_id": "doc"}) for _ in range(5)
    ]
    assert all(response.status_code == 401 for response in webhooks)


def test_manual_sheet_sync_has_its_own_smaller_budget(
    client: TestClient,
    pipeline: Pipeline,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_SHEET_SYNC_PER_MINUTE", "1")
    get_settings.cache_clear()

    url = f"/api/pipelines/quarterly-sheets/{uuid.uuid4()}/sync"
    first = client.post(url, json={"direction": "outbound"})
    assert first.status_code != 429

    second = client.post(url, json={"direction": "outbound"})
    assert second.status_code == 429
    assert second.json()["code"] == "RATE_LIMITED"

    note = client.post(f"/api/pipelines/{pipeline.id}/activities", json={"notes": "still allowed"})
    assert note.status_code == 201


@pytest.mark.parametrize(
    ("method", "path", "bucket"),
    [
        ("POST", "/api/pipelines/abc/activities", "activities"),
        ("POST", "/api/pipelines/abc/confirm-transition", "confirm-transition"),
        ("PATCH", "/api/pipelines/abc", "pipeline"),
        ("DELETE", "/api/pipelines/quarterly-sheets/abc", "quarterly-sheets"),
        ("POST", "/api/pipelines/quarterly-sheets/abc/sync", "sheet-sync"),
    ],
)
def test_policy_for_groups_routes(method: str, path: str, bucket: str) -> None:
    policy = policy_for(method, path)
    assert policy is not None
    assert policy.bucket == bucket


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/api/pipelines/abc"),
        ("POST", "/api/pipelines/webhook"),
        ("POST", "/api/pipelines/webhook/health"),
        ("POST", "/health"),
    ],
)
def test_policy_for_skips_reads_webhook_and_other_apis(method: str, path: str) -> None:
    assert policy_for(method, path) is None


def test_token_buckets_refill_over_the_window() -> None:
    now = [0.0]
    buckets = TokenBuckets(clock=lambda: now[0])

    assert buckets.acquire("alice", "activities", 2) == 0
    assert buckets.acquire("alice", "activities", 2) == 0
    assert buckets.acquire("alice", "activities", 2) == 30

    now[0] = 30.0
    assert buckets.acquire("alice", "activities", 2) == 0
    assert buckets.acquire("alice", "activities", 0) == 60
