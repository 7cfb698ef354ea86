import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from celery import Celery
from sqlalchemy.orm import Session

from app.context import bind_correlation_id, unbind_correlation_id
from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("pipeline_sync", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.task_default_queue = "pipelines"


@contextmanager
def _task_scope(correlation_id: str | None) -> Iterator[Session]:
    # Jobs enqueued from a request keep that request's correlation id.
    token = bind_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        unbind_correlation_id(token)


def _run(job: Callable[[Session], Any], correlation_id: str | None) -> dict:
    with _task_scope(correlation_id) as session:
        return job(session).to_dict()


@celery_app.task(name="app.tasks.pipelines.sync_sheet_inbound")
def sync_sheet_inbound_task(sheet_id: str, changed_rows: list[int] | None = None, correlation_id: str | None = None) -> dict:
    from app.pipelines.jobs import run_inbound_sync

    return _run(lambda session: run_inbound_sync(session, uuid.UUID(sheet_id), changed_rows=changed_rows), correlation_id)


@celery_app.task(name="app.tasks.pipelines.push_outbound")
def push_pipelines_outbound_task(pipeline_ids: list[str], correlation_id: str | None = None) -> dict:
    from app.pipelines.jobs import run_outbound_push

    return _run(lambda session: run_outbound_push(session, [uuid.UUID(item) for item in pipeline_ids]), correlation_id)
