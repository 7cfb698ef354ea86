from __future__ import annotations

import logging
import re
import secrets
import uuid
from dataclasses import dataclass, replace
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.auth import ActorUser
from app.core.cache import Cache, get_cache
from app.events import publish
from app.pipelines.models import Pipeline, QuarterlySheet, utcnow
from app.pipelines.sheets.columns import KNOWN_GROUPS

logger = logging.getLogger(__name__)

SYNC_STATUSES = ("active", "paused", "archived")
_SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")
_BARE_ID_RE = re.compile(r"^[a-zA-Z0-9-_]{20,}$")


def extract_spreadsheet_id(reference: str) -> str:
    """Canonical document id from a sheet URL or a bare id."""

    text = (reference or "").strip()
    match = _SPREADSHEET_URL_RE.search(text)
    if match:
        return match.group(1)
    if _BARE_ID_RE.match(text):
        return text
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail="spreadsheet reference must be a sheet URL or document id",
    )


def default_sheet_name(group: str, year: int, quarter: int) -> str:
    return f"SEA_{group.upper()}_Q{quarter}_{year}"


def generate_webhook_token() -> str:
    return secrets.token_hex(32)


@dataclass(slots=True, frozen=True)
class SheetTarget:
    sheet_id: uuid.UUID
    spreadsheet_id: str
    sheet_name: str
    group: str
    year: int
    quarter: int
    sync_status: str

    @property
    def is_active(self) -> bool:
        return self.sync_status == "active"


def _target_for(sheet: QuarterlySheet) -> SheetTarget:
    return SheetTarget(
        sheet_id=sheet.id,
        spreadsheet_id=sheet.spreadsheet_id,
        sheet_name=sheet.sheet_name,
        group=sheet.group,
        year=sheet.year,
        quarter=sheet.quarter,
        sync_status=sheet.sync_status,
    )


class QuarterlySheetService:
    def __init__(self, cache: Cache | None = None) -> None:
        self._cache = cache

    @property
    def cache(self) -> Cache:
        return self._cache or get_cache()

    def _cache_key(self, sheet_id: uuid.UUID) -> str:
        return f"pipelines:sheet-target:{sheet_id}"

    def _validate(self, *, quarter: int, group: str, sync_status: str | None = None) -> None:
        if quarter not in (1, 2, 3, 4):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="quarter must be between 1 and 4")
        if group not in KNOWN_GROUPS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"group must be one of: {', '.join(KNOWN_GROUPS)}",
            )
        if sync_status is not None and sync_status not in SYNC_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"sync_status must be one of: {', '.join(SYNC_STATUSES)}",
            )

    def get(self, session: Session, sheet_id: uuid.UUID) -> QuarterlySheet:
        sheet = session.get(QuarterlySheet, sheet_id)
        if sheet is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quarterly sheet not found")
        return sheet

    def create(
        self,
        session: Session,
        actor: ActorUser,
        *,
        year: int,
        quarter: int,
        group: str,
        spreadsheet_reference: str,
        sheet_name: str | None = None,
        sync_status: str = "active",
    ) -> QuarterlySheet:
        group = group.lower()
        self._validate(quarter=quarter, group=group, sync_status=sync_status)
        spreadsheet_id = extract_spreadsheet_id(spreadsheet_reference)

        duplicate = session.scalar(
            select(QuarterlySheet.id).where(
                QuarterlySheet.year == year,
                QuarterlySheet.quarter == quarter,
                QuarterlySheet.group == group,
            )
        )
        if duplicate is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"a sheet for {group} Q{quarter} {year} is already registered",
            )

        sheet = QuarterlySheet(
            year=year,
            quarter=quarter,
            group=group,
            spreadsheet_id=spreadsheet_id,
            sheet_name=(sheet_name or "").strip() or default_sheet_name(group, year, quarter),
            webhook_token=generate_webhook_token(),
            sync_status=sync_status,
            created_by=actor.user_id,
        )
        session.add(sheet)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"a sheet for {group} Q{quarter} {year} is already registered",
            ) from None
        session.refresh(sheet)
        logger.info(
            "quarterly_sheet.created",
            extra={"sheet_id": str(sheet.id), "spreadsheet_id": spreadsheet_id, "sheet_name": sheet.sheet_name},
        )
        return sheet

    def list_sheets(
        self,
        session: Session,
        *,
        year: int | None = None,
        quarter: int | None = None,
        group: str | None = None,
    ) -> list[dict[str, Any]]:
        counts = (
            select(Pipeline.quarterly_sheet_id, func.count(Pipeline.id).label("pipeline_count"))
            .group_by(Pipeline.quarterly_sheet_id)
            .subquery()
        )
        stmt = select(QuarterlySheet, func.coalesce(counts.c.pipeline_count, 0)).outerjoin(
            counts, counts.c.quarterly_sheet_id == QuarterlySheet.id
        )
        if year is not None:
            stmt = stmt.where(QuarterlySheet.year == year)
        if quarter is not None:
            stmt = stmt.where(QuarterlySheet.quarter == quarter)
        if group is not None:
            stmt = stmt.where(QuarterlySheet.group == group.lower())
        stmt = stmt.order_by(QuarterlySheet.year.desc(), QuarterlySheet.quarter.desc(), QuarterlySheet.group.asc())
        return [{"sheet": sheet, "pipeline_count": int(count)} for sheet, count in session.execute(stmt).all()]

    def pipeline_count(self, session: Session, sheet_id: uuid.UUID) -> int:
        return int(
            session.scalar(select(func.count(Pipeline.id)).where(Pipeline.quarterly_sheet_id == sheet_id)) or 0
        )

    def update(
        self,
        session: Session,
        actor: ActorUser,
        sheet_id: uuid.UUID,
        *,
        sync_status: str | None = None,
        sheet_name: str | None = None,
    ) -> QuarterlySheet:
        sheet = self.get(session, sheet_id)
        if sync_status is not None:
            self._validate(quarter=sheet.quarter, group=sheet.group, sync_status=sync_status)
            sheet.sync_status = sync_status
        if sheet_name is not None:
            cleaned = sheet_name.strip()
            if not cleaned:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="sheet_name must not be empty")
            sheet.sheet_name = cleaned
        session.commit()
        session.refresh(sheet)
        self.cache.invalidate(self._cache_key(sheet.id))
        logger.info(
            "quarterly_sheet.updated",
            extra={"sheet_id": str(sheet.id), "status": sheet.sync_status, "user_id": actor.user_id},
        )
        return sheet

    def rotate_webhook_token(self, session: Session, actor: ActorUser, sheet_id: uuid.UUID) -> QuarterlySheet:
        sheet = self.get(session, sheet_id)
        sheet.webhook_token = generate_webhook_token()
        session.commit()
        session.refresh(sheet)
        logger.info("quarterly_sheet.token_rotated", extra={"sheet_id": str(sheet.id), "user_id": actor.user_id})
        return sheet

    def delete(self, session: Session, actor: ActorUser, sheet_id: uuid.UUID) -> int:
        """Delete the entry and, first, every pipeline linked to it.

        Pipelines are removed one at a time so one failure does not keep the
        others; rows in the external document are left as they are.
        """

        sheet = self.get(session, sheet_id)
        pipeline_ids = list(session.scalars(select(Pipeline.id).where(Pipeline.quarterly_sheet_id == sheet.id)).all())
        deleted = 0
        for pipeline_id in pipeline_ids:
            pipeline = session.get(Pipeline, pipeline_id)
            if pipeline is None:
                continue
            try:
                session.delete(pipeline)
                session.commit()
                deleted += 1
            except Exception:
                session.rollback()
                logger.exception(
                    "quarterly_sheet.pipeline_delete_failed",
                    extra={"sheet_id": str(sheet_id), "pipeline_id": str(pipeline_id)},
                )

        sheet = self.get(session, sheet_id)
        session.delete(sheet)
        session.commit()
        self.cache.invalidate(self._cache_key(sheet_id))
        publish(
            {
                "event_type": "pipelines.sheet.deleted",
                "payload": {"sheet_id": str(sheet_id), "pipelines_deleted": deleted},
            }
        )
        logger.info(
            "quarterly_sheet.deleted",
            extra={"sheet_id": str(sheet_id), "total": deleted, "user_id": actor.user_id},
        )
        return deleted

    def get_by_webhook_token(self, session: Session, token: str) -> QuarterlySheet | None:
        if not token:
            return None
        return session.scalar(select(QuarterlySheet).where(QuarterlySheet.webhook_token == token))

    def resolve_target(self, session: Session, sheet_id: uuid.UUID | None) -> SheetTarget | None:
        """Where a sheet's rows live, with its current sync status and tab name.

        The cache is per process, so only the fields fixed at registration
        come from it; status and tab name are read from the database on every
        call and a pause or rename made elsewhere applies immediately.
        """

        if sheet_id is None:
            return None
        key = self._cache_key(sheet_id)
        current = session.execute(
            select(QuarterlySheet.sync_status, QuarterlySheet.sheet_name).where(QuarterlySheet.id == sheet_id)
        ).first()
        if current is None:
            self.cache.invalidate(key)
            return None
        cached = self.cache.get(key)
        if not isinstance(cached, SheetTarget):
            sheet = session.get(QuarterlySheet, sheet_id)
            if sheet is None:
                return None
            cached = _target_for(sheet)
            self.cache.set(key, cached)
        return replace(cached, sync_status=current.sync_status, sheet_name=current.sheet_name)

    def mark_synced(self, session: Session, sheet_id: uuid.UUID) -> None:
        sheet = session.get(QuarterlySheet, sheet_id)
        if sheet is not None:
            sheet.last_synced_at = utcnow()
            session.commit()


quarterly_sheet_service = QuarterlySheetService()
