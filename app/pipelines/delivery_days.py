from __future__ import annotations

import calendar
from datetime import date

# Jan..Dec; February is resolved per year
DEFAULT_DELIVERY_DAYS = (31, 28, 31, 31, 30, 31, 30, 31, 31, 30, 31, 30)


def is_leap_year(year: int) -> bool:
    return (year % 4 == 0 and year % 100 != 0) or year % 400 == 0


def default_delivery_days(year: int, month: int) -> int:
    if month == 2:
        return 29 if is_leap_year(year) else 28
    return DEFAULT_DELIVERY_DAYS[month - 1]


def calculate_delivery_days(starting_date: date | None, year: int, month: int) -> int:
    """Chargeable days in ``(year, month)`` for a pipeline starting on ``starting_date``.

    Without a start date the legacy per-month table applies. A month ending
    before the start counts zero; otherwise the count runs from the later of
    the start and the first of the month through the month's last day.
    """

    if starting_date is None:
        return default_delivery_days(year, month)

    first_day = date(year, month, 1)
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    if last_day < starting_date:
        return 0

    effective_start = max(starting_date, first_day)
    return (last_day - effective_start).days + 1


def calculate_quarter_delivery_days(
    starting_date: date | None,
    months: list[tuple[int, int]],
) -> list[tuple[int, int, int]]:
    return [(year, month, calculate_delivery_days(starting_date, year, month)) for year, month in months]
