from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.pipelines.stages import PipelineStatus

PipelineGroup = Literal["sales", "cs"]
SyncStatus = Literal["active", "paused", "archived"]
ActivityType = Literal["status_change", "field_update", "note"]
SyncDirection = Literal["inbound", "outbound"]


class MonthlyForecastRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    delivery_days: int | None
    gross_revenue: Decimal
    net_revenue: Decimal
    validation_flag: bool


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    group: str
    quarterly_sheet_id: UUID | None
    sheet_row_number: int | None
    classification: str | None
    poc: str
    team: str | None
    ma_mi: str | None
    pid: str | None
    publisher: str
    mid: str | None
    domain: str | None
    zid: str | None
    channel: str | None
    competitors: str | None
    description: str | None
    product: str | None
    imp: int | None
    ecpm: Decimal | None
    max_gross: Decimal | None
    revenue_share: Decimal | None
    day_gross: Decimal | None
    day_net_rev: Decimal | None
    q_gross: Decimal
    q_net_rev: Decimal
    action_date: date | None
    next_action: str | None
    action_detail: str | None
    action_progress: str | None
    status: PipelineStatus
    progress_percent: int | None
    starting_date: date | None
    proposal_date: date | None
    interested_date: date | None
    acceptance_date: date | None
    ready_to_deliver_date: date | None
    actual_starting_date: date | None
    close_won_date: date | None
    closed_date: date | None
    s_confirmation_status: str | None
    s_confirmed_at: datetime | None
    s_declined_at: datetime | None
    s_confirmation_notes: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="extra_metadata")
    created_by: str
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    forecasts: list[MonthlyForecastRead] = Field(default_factory=list)


class PipelineUpdate(BaseModel):
    """Editable pipeline fields; derived revenue is never accepted."""

    model_config = ConfigDict(extra="forbid")

    classification: str | None = None
    poc: str | None = Field(default=None, min_length=1)
    team: str | None = None
    ma_mi: str | None = None
    pid: str | None = None
    publisher: str | None = Field(default=None, min_length=1)
    mid: str | None = None
    domain: str | None = None
    zid: str | None = None
    channel: str | None = None
    competitors: str | None = None
    description: str | None = None
    product: str | None = None
    imp: int | None = Field(default=None, ge=0)
    ecpm: Decimal | None = Field(default=None, ge=Decimal("0"))
    max_gross: Decimal | None = Field(default=None, ge=Decimal("0"))
    revenue_share: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    progress_percent: int | None = Field(default=None, ge=0, le=100)
    action_date: date | None = None
    next_action: str | None = None
    action_detail: str | None = None
    action_progress: str | None = None
    status: PipelineStatus | None = None
    starting_date: date | None = None
    proposal_date: date | None = None
    interested_date: date | None = None
    acceptance_date: date | None = None
    ready_to_deliver_date: date | None = None
    actual_starting_date: date | None = None
    closed_date: date | None = None
    quarterly_sheet_id: UUID | None = None


class ConfirmTransitionRequest(BaseModel):
    action: Literal["confirm", "decline"]
    notes: str | None = Field(default=None, max_length=2000)


class ConfirmTransitionResponse(BaseModel):
    pipeline: PipelineRead
    message: str


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    activity_type: ActivityType
    field_changed: str | None
    old_value: str | None
    new_value: str | None
    notes: str | None
    logged_by: str
    logged_at: datetime


class ActivityPage(BaseModel):
    data: list[ActivityRead]
    total: int
    has_more: bool


class NoteCreate(BaseModel):
    notes: str = Field(min_length=1, max_length=5000)


class QuarterlySheetCreate(BaseModel):
    year: int = Field(ge=2000, le=2100)
    quarter: int
    group: str
    spreadsheet_url: str = Field(min_length=1)
    sheet_name: str | None = None
    sync_status: SyncStatus = "active"


class QuarterlySheetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sync_status: SyncStatus | None = None
    sheet_name: str | None = None


class QuarterlySheetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    year: int
    quarter: int
    group: str
    spreadsheet_id: str
    sheet_name: str
    webhook_token: str
    sync_status: SyncStatus | str
    last_synced_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    pipeline_count: int = 0


class SheetSyncRequest(BaseModel):
    direction: SyncDirection = "inbound"
    dry_run: bool = False


class WebhookPayload(BaseModel):
    token: str = Field(min_length=1)
    spreadsheet_id: str = Field(min_length=1)
    sheet_name: str | None = None
    trigger_type: str = "edit"
    timestamp: datetime | None = None
    changed_rows: list[int] | None = None


class SyncSummaryRead(BaseModel):
    direction: SyncDirection
    sheet_id: str | None
    dry_run: bool
    status: str
    total: int
    created: int
    updated: int
    unchanged: int
    failed: int
    skipped: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    changes: list[dict[str, Any]] = Field(default_factory=list)


class WebhookAccepted(BaseModel):
    status: Literal["accepted", "completed", "ignored"]
    sheet_id: UUID
    summary: SyncSummaryRead | None = None
