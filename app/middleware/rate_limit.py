"""Per-user throttling of pipeline and quarterly-sheet mutations.

Reads are never throttled and the spreadsheet webhook is exempt: it is
authenticated by its own token and bursts when editors paste many rows.
Manual sync runs get a smaller budget than ordinary edits because each one
fans out into requests against the spreadsheet API.
"""

from __future__ import annotations

import math
import re
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import Settings, get_settings

WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})

_PREFIX = "/api/pipelines"
_EXEMPT_PREFIXES = (f"{_PREFIX}/webhook",)
_SHEET_SYNC_PATH = re.compile(rf"^{_PREFIX}/quarterly-sheets/[^/]+/sync/?$")


@dataclass(frozen=True)
class RoutePolicy:
    bucket: str
    capacity: Callable[[Settings], int]


_SHEET_SYNC = RoutePolicy("sheet-sync", lambda settings: settings.rate_limit_sheet_sync_per_minute)


def _mutation_policy(bucket: str) -> RoutePolicy:
    return RoutePolicy(bucket, lambda settings: settings.rate_limit_pipeline_mutations_per_minute)


def policy_for(method: str, path: str) -> RoutePolicy | None:
    if method.upper() not in MUTATING_METHODS or not path.startswith(_PREFIX):
        return None
    if path.startswith(_EXEMPT_PREFIXES):
        return None
    if _SHEET_SYNC_PATH.match(path):
        return _SHEET_SYNC

    parts = [part for part in path[len(_PREFIX):].split("/") if part]
    if not parts:
        return _mutation_policy("pipelines")
    if parts[0] == "quarterly-sheets":
        return _mutation_policy("quarterly-sheets")
    # /{pipeline_id}/<action>; notes, recalculation and confirmation each get a bucket
    return _mutation_policy(parts[1] if len(parts) > 1 else "pipeline")


@dataclass
class _Allowance:
    remaining: float
    checked_at: float


class TokenBuckets:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._allowances: dict[tuple[str, str], _Allowance] = {}

    def acquire(self, subject: str, bucket: str, capacity: int) -> int:
        """Take one token; returns 0 when allowed, otherwise the seconds to wait."""

        if capacity <= 0:
            return WINDOW_SECONDS

        now = self._clock()
        with self._lock:
            allowance = self._allowances.setdefault((subject, bucket), _Allowance(float(capacity), now))
            allowance.remaining = min(
                float(capacity), allowance.remaining + max(0.0, now - allowance.checked_at) * capacity / WINDOW_SECONDS
            )
            allowance.checked_at = now
            if allowance.remaining >= 1.0:
                allowance.remaining -= 1.0
                return 0
            return max(1, math.ceil((1.0 - allowance.remaining) * WINDOW_SECONDS / capacity))

    def clear(self) -> None:
        with self._lock:
            self._allowances.clear()


_buckets = TokenBuckets()


def _subject(request: Request, settings: Settings) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return "anonymous"
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return "anonymous"
    subject = claims.get("sub")
    return str(subject) if subject is not None else "anonymous"


def _too_many_requests(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id() or getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "details": None,
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


class PipelineMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        policy = None if settings.rate_limit_disabled else policy_for(request.method, request.url.path)
        if policy is None:
            return await call_next(request)

        retry_after = _buckets.acquire(_subject(request, settings), policy.bucket, policy.capacity(settings))
        if retry_after:
            return _too_many_requests(request, retry_after)
        return await call_next(request)


def reset_rate_limiter() -> None:
    _buckets.clear()
