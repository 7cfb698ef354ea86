"""Translation between pipeline records and sheet rows.

Outbound values use the sheet's native encodings: dates are serial day
numbers counted from 1899-12-30, money is rounded to cents, blanks are empty
strings. Inbound parsing accepts both unformatted API values and the text a
person would type into the cell.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from app.pipelines.calculations import max_gross_from_traffic, round_money
from app.pipelines.sheets.a1 import column_letter
from app.pipelines.sheets.columns import ColumnKind, ColumnMap, ColumnSpec
from app.pipelines.stages import DEFAULT_STATUS, parse_status_label, status_label

SERIAL_EPOCH = date(1899, 12, 30)
MAX_DATE_SERIAL = 100_000
_NUMBER_NOISE_RE = re.compile(r"[,\s$%]")
_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y")


class RowValidationError(Exception):
    def __init__(self, row_number: int, code: str, message: str, field: str = "") -> None:
        self.row_number = row_number
        self.code = code
        self.field = field
        super().__init__(message)

    def to_row_error(self, raw_row: dict[str, Any]) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "error_code": self.code,
            "message": str(self),
            "field": self.field,
            "raw_row_json": json.dumps(raw_row, default=str),
        }


@dataclass(slots=True)
class ParsedRow:
    row_number: int
    pipeline_id: uuid.UUID
    fields: dict[str, Any]
    warnings: list[str] = field(default_factory=list)


def date_to_serial(value: date) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return (value - SERIAL_EPOCH).days


def serial_to_date(serial: int) -> date:
    return SERIAL_EPOCH + timedelta(days=serial)


def _to_number(value: Decimal) -> int | float:
    if value == value.to_integral_value():
        return int(value)
    return float(round_money(value))


def format_cell(kind: ColumnKind, value: Any) -> Any:
    if value is None:
        return ""
    if kind is ColumnKind.DATE:
        return date_to_serial(value)
    if kind is ColumnKind.STATUS:
        return status_label(value)
    if kind is ColumnKind.INTEGER:
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if kind is ColumnKind.DECIMAL:
        return float(round_money(Decimal(str(value))))
    if kind is ColumnKind.PERCENT:
        return _to_number(Decimal(str(value)))
    return str(value)


def pipeline_to_cells(pipeline: Any, column_map: ColumnMap) -> dict[int, Any]:
    """Column index to outbound cell value for every writable column."""

    cells: dict[int, Any] = {}
    for column in column_map.writable:
        cells[column.index] = format_cell(column.kind, getattr(pipeline, column.field, None))
    return cells


def raw_row_dict(row: list[Any]) -> dict[str, Any]:
    return {column_letter(index): value for index, value in enumerate(row) if value not in (None, "")}


def is_blank_row(row: list[Any]) -> bool:
    return all(_is_blank(value) for value in row)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_text(value: Any) -> str | None:
    if _is_blank(value):
        return None
    return str(value).strip()


def parse_decimal(value: Any) -> Decimal | None:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    try:
        parsed = Decimal(_NUMBER_NOISE_RE.sub("", str(value)))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None
    if not parsed.is_finite():
        raise ValueError(f"not a number: {value!r}")
    return parsed


def parse_integer(value: Any) -> int | None:
    parsed = parse_decimal(value)
    if parsed is None:
        return None
    return int(parsed.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_date(value: Any) -> date | None:
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    serial: Decimal | None = None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        serial = Decimal(str(value))
    else:
        text = str(value).strip()
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        try:
            serial = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"not a date: {value!r}") from None

    if not serial.is_finite() or serial < 0 or serial > MAX_DATE_SERIAL:
        raise ValueError(f"date serial out of range: {value!r}")
    return serial_to_date(int(serial))


def _parse_column(column: ColumnSpec, value: Any) -> Any:
    if column.kind is ColumnKind.DATE:
        return parse_date(value)
    if column.kind is ColumnKind.INTEGER:
        return parse_integer(value)
    if column.kind is ColumnKind.DECIMAL:
        return parse_decimal(value)
    if column.kind is ColumnKind.PERCENT:
        parsed = parse_decimal(value)
        if parsed is not None and column.field == "progress_percent":
            clamped = min(max(parsed, Decimal("0")), Decimal("100"))
            return int(clamped.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if parsed is not None and not (Decimal("0") <= parsed <= Decimal("100")):
            raise ValueError(f"percentage out of range: {value!r}")
        return parsed
    if column.kind is ColumnKind.STATUS:
        return parse_status_label(value) or DEFAULT_STATUS
    return parse_text(value)


def row_to_fields(row: list[Any], column_map: ColumnMap, row_number: int) -> ParsedRow:
    """Parse one sheet row; raises ``RowValidationError`` on the first bad cell."""

    def cell(index: int) -> Any:
        return row[index] if index < len(row) else None

    for field_name in column_map.required_fields:
        spec = column_map.get(field_name)
        if spec is not None and _is_blank(cell(spec.index)):
            raise RowValidationError(
                row_number,
                "missing_required",
                f"column {column_letter(spec.index)} ({field_name}) is required",
                field_name,
            )

    identifier = column_map.identifier
    try:
        pipeline_id = uuid.UUID(str(cell(identifier.index)).strip())
    except ValueError:
        raise RowValidationError(
            row_number,
            "invalid_identifier",
            f"column {column_letter(identifier.index)} must hold a pipeline id",
            identifier.field,
        ) from None

    fields: dict[str, Any] = {}
    for column in column_map.readable:
        if column.kind is ColumnKind.IDENTIFIER:
            continue
        raw = cell(column.index)
        try:
            fields[column.field] = _parse_column(column, raw)
        except ValueError as exc:
            code = "invalid_status" if column.kind is ColumnKind.STATUS else f"invalid_{column.kind.value}"
            raise RowValidationError(row_number, code, str(exc), column.field) from None

    max_gross = max_gross_from_traffic(fields.get("imp"), fields.get("ecpm"))
    if max_gross is not None:
        fields["max_gross"] = max_gross

    return ParsedRow(row_number=row_number, pipeline_id=pipeline_id, fields=fields)


def cells_equal(current: Any, desired: Any) -> bool:
    """Compare a cell read back from the sheet with the value we would write."""

    if _is_blank(current) and _is_blank(desired):
        return True
    if _is_blank(current) or _is_blank(desired):
        return False
    try:
        return parse_decimal(current) == parse_decimal(desired)
    except ValueError:
        return str(current).strip() == str(desired).strip()
