"""create pipeline, forecast, activity log and quarterly sheet tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "quarterly_sheet",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("quarter", sa.Integer(), nullable=False),
        sa.Column("group", sa.String(length=16), nullable=False),
        sa.Column("spreadsheet_id", sa.String(length=128), nullable=False),
        sa.Column("sheet_name", sa.String(length=255), nullable=False),
        sa.Column("webhook_token", sa.String(length=128), nullable=False),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("year", "quarter", "group", name="uq_quarterly_sheet_year_quarter_group"),
        sa.UniqueConstraint("webhook_token", name="uq_quarterly_sheet_webhook_token"),
        sa.CheckConstraint("quarter BETWEEN 1 AND 4", name="ck_quarterly_sheet_quarter_range"),
    )

    op.create_table(
        "pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("group", sa.String(length=16), nullable=False),
        sa.Column("quarterly_sheet_id", sa.Uuid(), nullable=True),
        sa.Column("sheet_row_number", sa.Integer(), nullable=True),
        sa.Column("classification", sa.String(length=255), nullable=True),
        sa.Column("poc", sa.String(length=255), nullable=False),
        sa.Column("team", sa.String(length=255), nullable=True),
        sa.Column("ma_mi", sa.String(length=64), nullable=True),
        sa.Column("pid", sa.String(length=255), nullable=True),
        sa.Column("publisher", sa.String(length=255), nullable=False),
        sa.Column("mid", sa.String(length=255), nullable=True),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("zid", sa.String(length=255), nullable=True),
        sa.Column("channel", sa.String(length=255), nullable=True),
        sa.Column("competitors", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("product", sa.String(length=255), nullable=True),
        sa.Column("imp", sa.BigInteger(), nullable=True),
        sa.Column("ecpm", sa.Numeric(18, 2), nullable=True),
        sa.Column("max_gross", sa.Numeric(18, 2), nullable=True),
        sa.Column("revenue_share", sa.Numeric(5, 2), nullable=True),
        sa.Column("day_gross", sa.Numeric(18, 2), nullable=True),
        sa.Column("day_net_rev", sa.Numeric(18, 2), nullable=True),
        sa.Column("q_gross", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("q_net_rev", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("action_date", sa.Date(), nullable=True),
        sa.Column("next_action", sa.Text(), nullable=True),
        sa.Column("action_detail", sa.Text(), nullable=True),
        sa.Column("action_progress", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="exploration"),
        sa.Column("progress_percent", sa.Integer(), nullable=True),
        sa.Column("starting_date", sa.Date(), nullable=True),
        sa.Column("proposal_date", sa.Date(), nullable=True),
        sa.Column("interested_date", sa.Date(), nullable=True),
        sa.Column("acceptance_date", sa.Date(), nullable=True),
        sa.Column("ready_to_deliver_date", sa.Date(), nullable=True),
        sa.Column("actual_starting_date", sa.Date(), nullable=True),
        sa.Column("close_won_date", sa.Date(), nullable=True),
        sa.Column("closed_date", sa.Date(), nullable=True),
        sa.Column("s_confirmation_status", sa.String(length=16), nullable=True),
        sa.Column("s_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("s_declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("s_confirmation_notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["quarterly_sheet_id"], ["quarterly_sheet.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "progress_percent IS NULL OR (progress_percent BETWEEN 0 AND 100)",
            name="ck_pipeline_progress_range",
        ),
        sa.CheckConstraint(
            "revenue_share IS NULL OR (revenue_share BETWEEN 0 AND 100)",
            name="ck_pipeline_revenue_share_range",
        ),
    )
    op.create_index("ix_pipeline_quarterly_sheet_id", "pipeline", ["quarterly_sheet_id"])
    op.create_index("ix_pipeline_group_status", "pipeline", ["group", "status"])
    op.create_index("ix_pipeline_created_at", "pipeline", ["created_at"])

    op.create_table(
        "pipeline_monthly_forecast",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("delivery_days", sa.Integer(), nullable=True),
        sa.Column("gross_revenue", sa.Numeric(18, 2), nullable=False),
        sa.Column("net_revenue", sa.Numeric(18, 2), nullable=False),
        sa.Column("validation_flag", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_id", "year", "month", name="uq_pipeline_monthly_forecast_month"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_pipeline_monthly_forecast_month"),
    )

    op.create_table(
        "pipeline_activity_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("field_changed", sa.String(length=64), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("logged_by", sa.String(length=255), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pipeline_id"], ["pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "activity_type IN ('status_change', 'field_update', 'note')",
            name="ck_pipeline_activity_log_type",
        ),
    )
    op.create_index(
        "ix_pipeline_activity_log_pipeline_logged_at",
        "pipeline_activity_log",
        ["pipeline_id", "logged_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_pipeline_activity_log_pipeline_logged_at", table_name="pipeline_activity_log")
    op.drop_table("pipeline_activity_log")
    op.drop_table("pipeline_monthly_forecast")
    op.drop_index("ix_pipeline_created_at", table_name="pipeline")
    op.drop_index("ix_pipeline_group_status", table_name="pipeline")
    op.drop_index("ix_pipeline_quarterly_sheet_id", table_name="pipeline")
    op.drop_table("pipeline")
    op.drop_table("quarterly_sheet")
