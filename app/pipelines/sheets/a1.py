from __future__ import annotations

import re
from dataclasses import dataclass

_CELL_RE = re.compile(r"^([A-Z]+)(\d*)$")


def column_letter(index: int) -> str:
    """0-based column index to its A1 letters (0 -> A, 26 -> AA)."""

    if index < 0:
        raise ValueError("column index must be non-negative")
    letters = ""
    current = index + 1
    while current > 0:
        current, remainder = divmod(current - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def column_index(letters: str) -> int:
    normalized = letters.strip().upper()
    if not normalized or not normalized.isalpha():
        raise ValueError(f"invalid column letters: {letters!r}")
    value = 0
    for char in normalized:
        value = value * 26 + (ord(char) - ord("A") + 1)
    return value - 1


def quote_sheet_name(sheet_name: str) -> str:
    escaped = sheet_name.replace("'", "''")
    return f"'{escaped}'"


def _unquote_sheet_name(raw: str) -> str:
    if len(raw) >= 2 and raw.startswith("'") and raw.endswith("'"):
        return raw[1:-1].replace("''", "'")
    return raw


@dataclass(slots=True, frozen=True)
class A1Range:
    sheet_name: str
    start_column: int
    start_row: int | None
    end_column: int
    end_row: int | None

    def to_a1(self) -> str:
        start = f"{column_letter(self.start_column)}{self.start_row or ''}"
        end = f"{column_letter(self.end_column)}{self.end_row or ''}"
        return f"{quote_sheet_name(self.sheet_name)}!{start}:{end}"


def parse_range(value: str) -> A1Range:
    if "!" not in value:
        raise ValueError(f"range must include a sheet name: {value!r}")
    raw_sheet, cells = value.rsplit("!", 1)
    start_raw, _, end_raw = cells.partition(":")
    end_raw = end_raw or start_raw

    start_match = _CELL_RE.match(start_raw.strip().upper())
    end_match = _CELL_RE.match(end_raw.strip().upper())
    if start_match is None or end_match is None:
        raise ValueError(f"invalid A1 range: {value!r}")

    return A1Range(
        sheet_name=_unquote_sheet_name(raw_sheet),
        start_column=column_index(start_match.group(1)),
        start_row=int(start_match.group(2)) if start_match.group(2) else None,
        end_column=column_index(end_match.group(1)),
        end_row=int(end_match.group(2)) if end_match.group(2) else None,
    )


def cell_range(sheet_name: str, column: int, row: int) -> str:
    return f"{quote_sheet_name(sheet_name)}!{column_letter(column)}{row}"


def column_range(sheet_name: str, start_column: int, end_column: int, start_row: int, end_row: int | None = None) -> str:
    return A1Range(sheet_name, start_column, start_row, end_column, end_row).to_a1()
