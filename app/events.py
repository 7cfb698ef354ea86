"""Domain events for pipelines and quarterly sheets.

Every envelope goes through ``publish``: it is stamped with an id, a timestamp
and the ambient correlation/sync-run ids, kept in ``published_events`` for
inspection, and handed to the handlers registered for its ``event_type``.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_sync_run_id

logger = logging.getLogger("app.events")

Envelope = dict[str, Any]
EnvelopeHandler = Callable[[Envelope], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EnvelopeHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EnvelopeHandler) -> None:
        handlers = self._handlers[event_type]
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EnvelopeHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_type: str) -> list[EnvelopeHandler]:
        return list(self._handlers.get(event_type, ()))

    def dispatch(self, envelope: Envelope) -> None:
        event_type = envelope.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            return
        for handler in self.handlers_for(event_type):
            handler(envelope)


event_bus = EventBus()
published_events: list[Envelope] = []


def _stamp(envelope: Envelope) -> Envelope:
    envelope.setdefault("event_id", str(uuid.uuid4()))
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    meta = dict(envelope["meta"]) if isinstance(envelope.get("meta"), dict) else {}
    sync_run_id = get_sync_run_id()
    if sync_run_id is not None:
        meta.setdefault("sync_run_id", sync_run_id)
    if meta:
        envelope["meta"] = meta
    return envelope


def publish(envelope: Envelope) -> None:
    _stamp(envelope)
    published_events.append(envelope)
    logger.debug("event.published", extra={"event_name": envelope.get("event_type")})
    event_bus.dispatch(envelope)
