"""Reconcile pipelines: recompute derived revenue and re-push sheet rows.

Usage:
    # Show what would change for every pipeline, without writing
    python -m app.pipelines.reconcile --all --dry-run

    # Recompute and push specific pipelines
    python -m app.pipelines.reconcile --ids ID [ID ...]

    # Recompute one quarter's sheet without touching the sheet
    python -m app.pipelines.reconcile --sheet-id SHEET_ID --no-push
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.pipelines.lifecycle import recompute
from app.pipelines.models import Pipeline
from app.pipelines.sheets.sync import SheetSyncEngine, SyncSummary, sync_engine
from app.pipelines.stages import PipelineStatus

logger = logging.getLogger(__name__)

_DERIVED = ("day_gross", "day_net_rev", "q_gross", "q_net_rev")


@dataclass(slots=True)
class ReconcileSelector:
    all: bool = False
    ids: list[uuid.UUID] = field(default_factory=list)
    group: str | None = None
    status: str | None = None
    sheet_id: uuid.UUID | None = None

    def is_empty(self) -> bool:
        return not (self.all or self.ids or self.group or self.status or self.sheet_id)


@dataclass(slots=True)
class ReconcileReport:
    dry_run: bool
    selected: int = 0
    recalculated: int = 0
    derived_changes: list[dict[str, Any]] = field(default_factory=list)
    missing_ids: list[str] = field(default_factory=list)
    sync: SyncSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def select_pipelines(session: Session, selector: ReconcileSelector) -> list[Pipeline]:
    if selector.is_empty():
        raise ValueError("a selector is required: --all, --ids or a filter")
    stmt = select(Pipeline)
    if selector.ids:
        stmt = stmt.where(Pipeline.id.in_(selector.ids))
    if selector.group:
        stmt = stmt.where(Pipeline.group == selector.group)
    if selector.status:
        stmt = stmt.where(Pipeline.status == selector.status)
    if selector.sheet_id:
        stmt = stmt.where(Pipeline.quarterly_sheet_id == selector.sheet_id)
    return list(session.scalars(stmt.order_by(Pipeline.created_at.desc(), Pipeline.id)).all())


def _snapshot(pipeline: Pipeline) -> dict[str, Any]:
    values: dict[str, Any] = {name: getattr(pipeline, name) for name in _DERIVED}
    values["forecasts"] = [
        (item.year, item.month, item.delivery_days, item.gross_revenue, item.net_revenue) for item in pipeline.forecasts
    ]
    return values


def reconcile(
    session: Session,
    selector: ReconcileSelector,
    *,
    dry_run: bool = False,
    push: bool = True,
    engine: SheetSyncEngine | None = None,
    today: date | None = None,
) -> ReconcileReport:
    """Recompute every selected pipeline and, unless ``push`` is off, re-push it.

    Running it twice without intervening edits reports no derived changes the
    second time.
    """

    report = ReconcileReport(dry_run=dry_run)
    pipelines = select_pipelines(session, selector)
    report.selected = len(pipelines)
    found = {item.id for item in pipelines}
    report.missing_ids = [str(item) for item in selector.ids if item not in found]

    for pipeline in pipelines:
        before = _snapshot(pipeline)
        recompute(session, pipeline, today=today)
        after = _snapshot(pipeline)
        report.recalculated += 1
        changed = {name: {"before": before[name], "after": after[name]} for name in after if before[name] != after[name]}
        if changed:
            report.derived_changes.append({"pipeline_id": str(pipeline.id), "changes": changed})

    runner = engine or sync_engine
    if dry_run:
        if push:
            report.sync = runner.push_pipelines(session, pipelines, dry_run=True)
        session.rollback()
    else:
        session.commit()
        if push:
            report.sync = runner.push_pipelines(session, pipelines)

    logger.info(
        "pipelines.reconciled",
        extra={"dry_run": dry_run, "total": report.selected, "updated": len(report.derived_changes)},
    )
    return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline-reconcile",
        description="Recompute derived revenue and re-push pipelines to their quarterly sheets",
    )
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--all", action="store_true", help="Select every pipeline")
    target.add_argument("--ids", nargs="+", type=uuid.UUID, default=[], metavar="ID", help="Select pipelines by id")
    parser.add_argument("--group", choices=["sales", "cs"], default=None, help="Only pipelines of this group")
    parser.add_argument(
        "--status",
        choices=[item.value for item in PipelineStatus],
        default=None,
        help="Only pipelines in this stage",
    )
    parser.add_argument("--sheet-id", type=uuid.UUID, default=None, help="Only pipelines linked to this quarterly sheet")
    parser.add_argument("--dry-run", action="store_true", help="Report derived and cell differences without writing")
    parser.add_argument("--no-push", action="store_true", help="Recompute only; leave the sheets untouched")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    selector = ReconcileSelector(all=args.all, ids=list(args.ids), group=args.group, status=args.status, sheet_id=args.sheet_id)
    if selector.is_empty():
        parser.error("choose --all, --ids or at least one of --group/--status/--sheet-id")

    from app.context import bind_correlation_id, unbind_correlation_id
    from app.core.config import get_settings
    from app.core.database import SessionLocal
    from app.logging import configure_logging
    from app.otel import setup_otel

    configure_logging()
    setup_otel("pipeline-reconcile", get_settings().otel_enabled)
    token = bind_correlation_id(f"reconcile-{uuid.uuid4()}")
    session = SessionLocal()
    try:
        report = reconcile(session, selector, dry_run=args.dry_run, push=not args.no_push)
    finally:
        session.close()
        unbind_correlation_id(token)

    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 1 if report.sync is not None and report.sync.failed else 0


if __name__ == "__main__":
    sys.exit(main())
