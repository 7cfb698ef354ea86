from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

sheet_sync_rows_total = Counter(
    "sheet_sync_rows_total",
    "Rows processed by the sheet sync engine by direction and outcome",
    ["direction", "outcome"],
)

sheet_sync_errors_total = Counter(
    "sheet_sync_errors_total",
    "Sheet sync failures by direction and error type",
    ["direction", "error_type"],
)

sheet_sync_run_duration_seconds = Histogram(
    "sheet_sync_run_duration_seconds",
    "Sheet sync run duration in seconds",
    ["direction"],
)

pipeline_confirmations_total = Counter(
    "pipeline_confirmations_total",
    "Distribution-started confirmation attempts by action and outcome",
    ["action", "outcome"],
)

pipeline_recalculations_total = Counter(
    "pipeline_recalculations_total",
    "Derived revenue recalculations",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_sheet_sync_row(direction: str, outcome: str) -> None:
    sheet_sync_rows_total.labels(direction=direction, outcome=outcome).inc()


def observe_sheet_sync_error(direction: str, error_type: str) -> None:
    sheet_sync_errors_total.labels(direction=direction, error_type=error_type).inc()


def observe_sheet_sync_run(direction: str, duration: float) -> None:
    sheet_sync_run_duration_seconds.labels(direction=direction).observe(duration)


def observe_confirmation(action: str, outcome: str) -> None:
    pipeline_confirmations_total.labels(action=action, outcome=outcome).inc()


def observe_recalculation(count: int = 1) -> None:
    if count > 0:
        pipeline_recalculations_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
