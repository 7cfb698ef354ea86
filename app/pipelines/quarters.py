from __future__ import annotations

from datetime import date

FISCAL_YEAR_START_MONTH = 4


def current_fiscal_quarter(today: date) -> tuple[int, int]:
    """Return ``(fiscal_year, quarter)``; Q1 is Apr-Jun, Q4 is Jan-Mar of the next calendar year."""

    fiscal_month = today.month if today.month >= FISCAL_YEAR_START_MONTH else today.month + 12
    quarter = (fiscal_month - FISCAL_YEAR_START_MONTH) // 3 + 1
    fiscal_year = today.year if today.month >= FISCAL_YEAR_START_MONTH else today.year - 1
    return fiscal_year, quarter


def fiscal_quarter_months(fiscal_year: int, quarter: int) -> list[tuple[int, int]]:
    if quarter not in (1, 2, 3, 4):
        raise ValueError("quarter must be between 1 and 4")

    start = FISCAL_YEAR_START_MONTH + (quarter - 1) * 3
    months: list[tuple[int, int]] = []
    for offset in range(3):
        month = start + offset
        year = fiscal_year
        if month > 12:
            month -= 12
            year += 1
        months.append((year, month))
    return months


def current_quarter_months(today: date) -> list[tuple[int, int]]:
    return fiscal_quarter_months(*current_fiscal_quarter(today))
