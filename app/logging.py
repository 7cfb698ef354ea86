from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_sync_run_id
from app.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys()) | {"correlation_id", "sync_run_id"}

# Only these extras reach the JSON payload; anything else passed via ``extra`` is dropped.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        "user_id",
        # jobs and events
        "job_id",
        "job_type",
        "event_name",
        "status",
        "error",
        "error_type",
        # pipelines
        "pipeline_id",
        "action",
        "days_remaining",
        # sheet sync
        "sheet_id",
        "spreadsheet_id",
        "sheet_name",
        "row_number",
        "direction",
        "dry_run",
        "total",
        "rows_created",
        "updated",
        "unchanged",
        "failed",
        "skipped",
    }
)
_MAX_ERROR_LENGTH = 500


def _stamp_ids(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "sync_run_id", None):
        record.sync_run_id = get_sync_run_id()
    return record


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_ids(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_ids(_DEFAULT_RECORD_FACTORY(*args, **kwargs))


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with whitelisted extras nested under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        sync_run_id = getattr(record, "sync_run_id", None)
        if sync_run_id:
            payload["sync_run_id"] = sync_run_id

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipelines_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._pipelines_configured = True  # type: ignore[attr-defined]
