from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Probes and scrapes are counted but only logged when they fail.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def _finish(request: Request, status_code: int, started: float) -> tuple[str, dict[str, object]]:
    # The route template is only known once the router has matched.
    path = resolve_http_path_label(request)
    elapsed = time.perf_counter() - started
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    return path, {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _, fields = _finish(request, 500, started)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        path, fields = _finish(request, response.status_code, started)
        if path not in _QUIET_PATHS or response.status_code >= 400:
            logger.log(logging.WARNING if response.status_code >= 500 else logging.INFO, "http.request", extra=fields)
        return response
