from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuarterlySheet(Base):
    __tablename__ = "quarterly_sheet"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    group: Mapped[str] = mapped_column(String(16), nullable=False)
    spreadsheet_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sheet_name: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_token: Mapped[str] = mapped_column(String(128), nullable=False)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("year", "quarter", "group", name="uq_quarterly_sheet_year_quarter_group"),
        UniqueConstraint("webhook_token", name="uq_quarterly_sheet_webhook_token"),
        CheckConstraint("quarter BETWEEN 1 AND 4", name="ck_quarterly_sheet_quarter_range"),
    )


class Pipeline(Base):
    __tablename__ = "pipeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    group: Mapped[str] = mapped_column(String(16), nullable=False)
    quarterly_sheet_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quarterly_sheet.id", ondelete="SET NULL"),
        nullable=True,
    )
    sheet_row_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    classification: Mapped[str | None] = mapped_column(String(255), nullable=True)
    poc: Mapped[str] = mapped_column(String(255), nullable=False)
    team: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ma_mi: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    publisher: Mapped[str] = mapped_column(String(255), nullable=False)
    mid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    zid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(255), nullable=True)
    competitors: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    product: Mapped[str | None] = mapped_column(String(255), nullable=True)

    imp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ecpm: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    max_gross: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    revenue_share: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    day_gross: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    day_net_rev: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    q_gross: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    q_net_rev: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")

    action_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    next_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_progress: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="exploration", server_default="exploration")
    progress_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starting_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    proposal_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    interested_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    acceptance_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    ready_to_deliver_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    actual_starting_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    close_won_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    closed_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    s_confirmation_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    s_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    s_declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    s_confirmation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    forecasts: Mapped[list[MonthlyForecast]] = relationship(
        "app.pipelines.models.MonthlyForecast",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        order_by="[MonthlyForecast.year, MonthlyForecast.month]",
    )
    activities: Mapped[list[PipelineActivity]] = relationship(
        "app.pipelines.models.PipelineActivity",
        back_populates="pipeline",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("progress_percent IS NULL OR (progress_percent BETWEEN 0 AND 100)", name="ck_pipeline_progress_range"),
        CheckConstraint("revenue_share IS NULL OR (revenue_share BETWEEN 0 AND 100)", name="ck_pipeline_revenue_share_range"),
        Index("ix_pipeline_quarterly_sheet_id", "quarterly_sheet_id"),
        Index("ix_pipeline_group_status", "group", "status"),
        Index("ix_pipeline_created_at", "created_at"),
    )


class MonthlyForecast(Base):
    __tablename__ = "pipeline_monthly_forecast"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    net_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    validation_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    pipeline: Mapped[Pipeline] = relationship("app.pipelines.models.Pipeline", back_populates="forecasts")

    __table_args__ = (
        UniqueConstraint("pipeline_id", "year", "month", name="uq_pipeline_monthly_forecast_month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_pipeline_monthly_forecast_month"),
    )


class PipelineActivity(Base):
    __tablename__ = "pipeline_activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    field_changed: Mapped[str | None] = mapped_column(String(64), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    logged_by: Mapped[str] = mapped_column(String(255), nullable=False)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pipeline: Mapped[Pipeline] = relationship("app.pipelines.models.Pipeline", back_populates="activities")

    __table_args__ = (
        CheckConstraint(
            "activity_type IN ('status_change', 'field_update', 'note')",
            name="ck_pipeline_activity_log_type",
        ),
        Index("ix_pipeline_activity_log_pipeline_logged_at", "pipeline_id", "logged_at"),
    )


@event.listens_for(PipelineActivity, "before_update")
def _reject_activity_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ValueError("pipeline activity log entries are immutable")
