from app.pipelines.sheets.client import (
    GoogleSheetsClient,
    InMemorySheetsClient,
    SheetsApiError,
    SheetsClient,
    classify_sheets_error,
    get_sheets_client,
    set_sheets_client,
)
from app.pipelines.sheets.columns import CS_COLUMNS, SALES_COLUMNS, ColumnKind, ColumnMap, ColumnSpec, column_map_for

__all__ = [
    "CS_COLUMNS",
    "ColumnKind",
    "ColumnMap",
    "ColumnSpec",
    "GoogleSheetsClient",
    "InMemorySheetsClient",
    "SALES_COLUMNS",
    "SheetsApiError",
    "SheetsClient",
    "classify_sheets_error",
    "column_map_for",
    "get_sheets_client",
    "set_sheets_client",
]
