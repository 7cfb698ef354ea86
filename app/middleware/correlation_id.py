from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.context import bind_correlation_id, unbind_correlation_id

HEADER = "x-correlation-id"
_FALLBACK_HEADERS = (HEADER, "x-request-id")
_MAX_LENGTH = 128


def resolve_correlation_id(headers: Headers) -> str:
    for name in _FALLBACK_HEADERS:
        value = headers.get(name, "").strip()
        if value:
            return value[:_MAX_LENGTH]
    return str(uuid.uuid4())


class CorrelationIdMiddleware:
    """Binds one correlation id per HTTP request and echoes it on the response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = resolve_correlation_id(Headers(scope=scope))
        scope.setdefault("state", {})["correlation_id"] = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[HEADER] = correlation_id
            await send(message)

        token = bind_correlation_id(correlation_id)
        try:
            await self.app(scope, receive, send_with_header)
        finally:
            unbind_correlation_id(token)
