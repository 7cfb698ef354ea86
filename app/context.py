"""Ambient identifiers shared by logs, events and spans.

``correlation_id`` follows one HTTP request or webhook delivery. ``sync_run_id``
is set for the duration of a single sheet sync pass so that every row-level
log line and event emitted inside it can be grouped afterwards.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
sync_run_id_var: ContextVar[str | None] = ContextVar("sync_run_id", default=None)


def bind_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def unbind_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_sync_run_id() -> str | None:
    return sync_run_id_var.get()


@contextmanager
def sync_run(run_id: str | None = None) -> Iterator[str]:
    """Scope a sync pass; nested passes get their own id and restore the outer one."""

    value = run_id or str(uuid.uuid4())
    token = sync_run_id_var.set(value)
    try:
        yield value
    finally:
        sync_run_id_var.reset(token)
