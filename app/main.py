from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import get_db
from app.events import event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import PipelineMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.pipelines import jobs
from app.pipelines.sheets.client import build_sheets_client, set_sheets_client


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_outbound_event_types = [
    "pipelines.pipeline.updated",
    "pipelines.pipeline.confirmed",
    "pipelines.pipeline.declined",
]


@contextmanager
def _push_session() -> Iterator[Session]:
    # Same session source as the request handlers, including a test override of get_db.
    source = app.dependency_overrides.get(get_db, get_db)
    yield from source()


def _on_pipeline_changed(envelope: dict[str, Any]) -> None:
    settings = get_settings()
    if not settings.sheet_sync_enabled:
        return
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    try:
        pipeline_id = uuid.UUID(str(payload.get("pipeline_id")))
    except ValueError:
        return

    try:
        if settings.auto_run_jobs:
            with _push_session() as session:
                jobs.run_outbound_push(session, [pipeline_id])
        else:
            jobs.enqueue_outbound_push([pipeline_id])
    except Exception as exc:
        logger.exception(
            "sheet_sync.auto_push_failed",
            extra={"event_name": envelope.get("event_type"), "pipeline_id": str(pipeline_id), "error": str(exc)[:500]},
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_name in _outbound_event_types:
            event_bus.subscribe(event_name, _on_pipeline_changed)
        _subscriptions_registered = True
    logger.info("api.started", extra={"event_name": "system.started", "status": "ok"})
    yield


app = FastAPI(title="Pipeline Sync API", version="0.1.0", lifespan=lifespan)
app.add_middleware(PipelineMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
set_sheets_client(build_sheets_client(settings))

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
