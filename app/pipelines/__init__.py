from app.pipelines.api import router, sheets_router, webhook_router
from app.pipelines.models import MonthlyForecast, Pipeline, PipelineActivity, QuarterlySheet
from app.pipelines.registry import QuarterlySheetService, quarterly_sheet_service
from app.pipelines.service import PipelineService, pipeline_service
from app.pipelines.sheets.sync import SheetSyncEngine, SyncSummary, sync_engine
from app.pipelines.stages import ConfirmationGateError, PipelineStatus

__all__ = [
    "router",
    "sheets_router",
    "webhook_router",
    "Pipeline",
    "MonthlyForecast",
    "PipelineActivity",
    "QuarterlySheet",
    "QuarterlySheetService",
    "quarterly_sheet_service",
    "PipelineService",
    "pipeline_service",
    "SheetSyncEngine",
    "SyncSummary",
    "sync_engine",
    "ConfirmationGateError",
    "PipelineStatus",
]
