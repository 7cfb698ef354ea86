from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import ActorUser, AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.pipelines import jobs
from app.pipelines.activity import activity_log
from app.pipelines.registry import quarterly_sheet_service
from app.pipelines.schemas import (
    ActivityPage,
    ActivityRead,
    ConfirmTransitionRequest,
    ConfirmTransitionResponse,
    NoteCreate,
    PipelineRead,
    PipelineUpdate,
    QuarterlySheetCreate,
    QuarterlySheetRead,
    QuarterlySheetUpdate,
    SheetSyncRequest,
    SyncSummaryRead,
    WebhookAccepted,
    WebhookPayload,
)
from app.pipelines.service import pipeline_service

router = APIRouter(prefix="/api/pipelines", tags=["pipelines"])
sheets_router = APIRouter(prefix="/api/pipelines/quarterly-sheets", tags=["pipelines.quarterly_sheets"])
webhook_router = APIRouter(prefix="/api/pipelines/webhook", tags=["pipelines.webhook"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    message = str(exc.detail.get("message", exc.detail)) if isinstance(exc.detail, dict) else str(exc.detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=exc.detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _sheet_read(sheet: Any, pipeline_count: int) -> QuarterlySheetRead:
    read = QuarterlySheetRead.model_validate(sheet)
    read.pipeline_count = pipeline_count
    return read


@sheets_router.get("", response_model=list[QuarterlySheetRead])
def list_quarterly_sheets(
    request: Request,
    year: int | None = Query(default=None),
    quarter: int | None = Query(default=None, ge=1, le=4),
    group: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[QuarterlySheetRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        rows = quarterly_sheet_service.list_sheets(db, year=year, quarter=quarter, group=group)
        return [_sheet_read(row["sheet"], row["pipeline_count"]) for row in rows]
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_list_failed")


@sheets_router.post("", response_model=QuarterlySheetRead, status_code=status.HTTP_201_CREATED)
def create_quarterly_sheet(
    request: Request,
    dto: QuarterlySheetCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuarterlySheetRead | JSONResponse:
    try:
        require_permission(user, "pipelines.sheets.manage")
        sheet = quarterly_sheet_service.create(
            db,
            user,
            year=dto.year,
            quarter=dto.quarter,
            group=dto.group,
            spreadsheet_reference=dto.spreadsheet_url,
            sheet_name=dto.sheet_name,
            sync_status=dto.sync_status,
        )
        return _sheet_read(sheet, 0)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_create_failed")


@sheets_router.patch("/{sheet_id}", response_model=QuarterlySheetRead)
def update_quarterly_sheet(
    request: Request,
    sheet_id: uuid.UUID,
    dto: QuarterlySheetUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuarterlySheetRead | JSONResponse:
    try:
        require_permission(user, "pipelines.sheets.manage")
        sheet = quarterly_sheet_service.update(db, user, sheet_id, sync_status=dto.sync_status, sheet_name=dto.sheet_name)
        return _sheet_read(sheet, quarterly_sheet_service.pipeline_count(db, sheet.id))
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_update_failed")


@sheets_router.delete("/{sheet_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_quarterly_sheet(
    request: Request,
    sheet_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.sheets.manage")
        deleted = quarterly_sheet_service.delete(db, user, sheet_id)
        return {"status": "deleted", "pipelines_deleted": deleted}
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_delete_failed")


@sheets_router.post("/{sheet_id}/rotate-token", response_model=QuarterlySheetRead)
def rotate_quarterly_sheet_token(
    request: Request,
    sheet_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuarterlySheetRead | JSONResponse:
    try:
        require_permission(user, "pipelines.sheets.manage")
        sheet = quarterly_sheet_service.rotate_webhook_token(db, user, sheet_id)
        return _sheet_read(sheet, quarterly_sheet_service.pipeline_count(db, sheet.id))
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_rotate_token_failed")


@sheets_router.post("/{sheet_id}/sync", response_model=SyncSummaryRead)
def sync_quarterly_sheet(
    request: Request,
    sheet_id: uuid.UUID,
    dto: SheetSyncRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SyncSummaryRead | JSONResponse:
    try:
        require_permission(user, "pipelines.sync")
        if dto.direction == "inbound":
            summary = jobs.run_inbound_sync(db, sheet_id, dry_run=dto.dry_run)
        else:
            summary = jobs.run_sheet_push(db, sheet_id, dry_run=dto.dry_run)
        return SyncSummaryRead.model_validate(summary.to_dict())
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_sheet_sync_failed")


@webhook_router.get("")
def webhook_health() -> dict[str, str]:
    return {"status": "ok", "service": "pipeline-sheet-webhook"}


@webhook_router.post("", response_model=WebhookAccepted)
def receive_sheet_webhook(
    request: Request,
    response: Response,
    payload: WebhookPayload,
    db: Session = Depends(get_db),
) -> WebhookAccepted | JSONResponse:
    try:
        sheet = quarterly_sheet_service.get_by_webhook_token(db, payload.token)
        if sheet is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")
        if sheet.spreadsheet_id != payload.spreadsheet_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Spreadsheet does not match the registered sheet")
        if sheet.sync_status != "active":
            raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=f"Sheet sync is {sheet.sync_status}")
        if payload.sheet_name and payload.sheet_name != sheet.sheet_name:
            return WebhookAccepted(status="ignored", sheet_id=sheet.id)

        if get_settings().auto_run_jobs:
            summary = jobs.run_inbound_sync(db, sheet.id, changed_rows=payload.changed_rows)
            return WebhookAccepted(
                status="completed",
                sheet_id=sheet.id,
                summary=SyncSummaryRead.model_validate(summary.to_dict()),
            )

        jobs.enqueue_inbound_sync(sheet.id, payload.changed_rows)
        response.status_code = status.HTTP_202_ACCEPTED
        return WebhookAccepted(status="accepted", sheet_id=sheet.id)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_webhook_rejected")


@router.post("", status_code=status.HTTP_405_METHOD_NOT_ALLOWED, response_model=None)
def create_pipeline(request: Request) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        code="pipeline_create_disabled",
        message="Pipelines are created by sheet ingestion",
    )


@router.get("", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    group: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    quarterly_sheet_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return pipeline_service.list_pipelines(
            db,
            group=group,
            status_filter=status_filter,
            quarterly_sheet_id=quarterly_sheet_id,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_list_failed")


@router.get("/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return pipeline_service.get(db, pipeline_id)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_get_failed")


@router.patch("/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "pipelines.write")
        return pipeline_service.update(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_update_failed")


@router.delete("/{pipeline_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.write")
        row_deleted = pipeline_service.delete(db, user, pipeline_id)
        return {"status": "deleted", "sheet_row_deleted": row_deleted}
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_delete_failed")


@router.post("/{pipeline_id}/recalculate", response_model=PipelineRead)
def recalculate_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "pipelines.write")
        return pipeline_service.recalculate(db, pipeline_id)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_recalculate_failed")


@router.post("/{pipeline_id}/confirm-transition", response_model=ConfirmTransitionResponse)
def confirm_transition(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: ConfirmTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ConfirmTransitionResponse | JSONResponse:
    try:
        require_permission(user, "pipelines.write")
        pipeline, message = pipeline_service.confirm_transition(db, user, pipeline_id, action=dto.action, notes=dto.notes)
        return ConfirmTransitionResponse(pipeline=PipelineRead.model_validate(pipeline), message=message)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_confirm_transition_failed")


@router.get("/{pipeline_id}/activities", response_model=ActivityPage)
def list_pipeline_activities(
    request: Request,
    pipeline_id: uuid.UUID,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    activity_type: str | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityPage | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        page = activity_log.list_activities(db, pipeline_id, limit=limit, offset=offset, activity_type=activity_type)
        return ActivityPage(
            data=[ActivityRead.model_validate(item) for item in page["data"]],
            total=page["total"],
            has_more=page["has_more"],
        )
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_activity_list_failed")


@router.post("/{pipeline_id}/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def add_pipeline_note(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "pipelines.write")
        return activity_log.add_note(db, pipeline_id=pipeline_id, notes=dto.notes, logged_by=user.user_id)
    except HTTPException as exc:
        return _failure(request, exc, "pipeline_note_create_failed")
