"""Derived revenue for a pipeline, replicating the legacy spreadsheet formulas.

All functions here are total: missing or malformed numeric inputs produce
``None`` daily figures and zero monthly figures instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from app.pipelines.delivery_days import calculate_delivery_days
from app.pipelines.quarters import current_quarter_months, fiscal_quarter_months
from app.pipelines.stages import is_zero_revenue

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DAYS_PER_CAP_PERIOD = Decimal("30")
FALLBACK_DELIVERY_DAYS = 30


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(slots=True, frozen=True)
class MonthInput:
    year: int
    month: int
    delivery_days: int | None = None


@dataclass(slots=True, frozen=True)
class MonthlyRevenue:
    year: int
    month: int
    delivery_days: int | None
    gross_revenue: Decimal
    net_revenue: Decimal


@dataclass(slots=True)
class RevenueResult:
    day_gross: Decimal | None
    day_net_rev: Decimal | None
    q_gross: Decimal
    q_net_rev: Decimal
    months: list[MonthlyRevenue] = field(default_factory=list)

    def quarterly_breakdown(self) -> dict[str, dict[str, float]]:
        gross = [item.gross_revenue for item in self.months] + [ZERO] * (3 - len(self.months))
        net = [item.net_revenue for item in self.months] + [ZERO] * (3 - len(self.months))
        return {
            "gross": {"first_month": float(gross[0]), "middle_month": float(gross[1]), "last_month": float(gross[2])},
            "net": {"first_month": float(net[0]), "middle_month": float(net[1]), "last_month": float(net[2])},
        }


def max_gross_from_traffic(imp: Any, ecpm: Any) -> Decimal | None:
    """The sheet's max gross formula: impressions over 30 days times eCPM per mille."""

    imp_value = to_decimal(imp)
    ecpm_value = to_decimal(ecpm)
    if imp_value is None or ecpm_value is None:
        return None
    return round_money(imp_value * ecpm_value / Decimal("1000"))


def calculate_revenue(
    *,
    max_gross: Any,
    revenue_share: Any,
    status: Any,
    progress_percent: Any,
    months: list[MonthInput],
) -> RevenueResult:
    max_gross_value = to_decimal(max_gross)
    share_value = to_decimal(revenue_share)
    progress_value = to_decimal(progress_percent)

    day_gross = max_gross_value / DAYS_PER_CAP_PERIOD if max_gross_value is not None else None
    day_net_rev = day_gross * (share_value / HUNDRED) if day_gross is not None and share_value is not None else None

    zero_revenue = is_zero_revenue(status)
    progress_multiplier = progress_value / HUNDRED if progress_value is not None else ZERO

    monthly: list[MonthlyRevenue] = []
    for item in months:
        gross = ZERO
        net = ZERO
        if not zero_revenue and day_gross is not None and day_net_rev is not None:
            days = Decimal(item.delivery_days if item.delivery_days is not None else FALLBACK_DELIVERY_DAYS)
            gross = day_gross * progress_multiplier * days
            net = day_net_rev * progress_multiplier * days
        monthly.append(
            MonthlyRevenue(
                year=item.year,
                month=item.month,
                delivery_days=item.delivery_days,
                gross_revenue=round_money(gross),
                net_revenue=round_money(net),
            )
        )

    # quarter totals add the already-rounded months so the sheet and the db never drift
    q_gross = round_money(sum((item.gross_revenue for item in monthly), ZERO))
    q_net_rev = round_money(sum((item.net_revenue for item in monthly), ZERO))

    return RevenueResult(
        day_gross=round_money(day_gross) if day_gross is not None else None,
        day_net_rev=round_money(day_net_rev) if day_net_rev is not None else None,
        q_gross=q_gross,
        q_net_rev=q_net_rev,
        months=monthly,
    )


def calculate_revenue_for_months(
    *,
    max_gross: Any,
    revenue_share: Any,
    status: Any,
    progress_percent: Any,
    starting_date: date | None,
    months: list[tuple[int, int]],
) -> RevenueResult:
    inputs = [
        MonthInput(year=year, month=month, delivery_days=calculate_delivery_days(starting_date, year, month))
        for year, month in months
    ]
    return calculate_revenue(
        max_gross=max_gross,
        revenue_share=revenue_share,
        status=status,
        progress_percent=progress_percent,
        months=inputs,
    )


def calculate_revenue_with_delivery_days(
    *,
    max_gross: Any,
    revenue_share: Any,
    status: Any,
    progress_percent: Any,
    starting_date: date | None,
    today: date | None = None,
    fiscal_year: int | None = None,
    quarter: int | None = None,
) -> RevenueResult:
    """Convenience variant deriving the three months' delivery days from ``starting_date``.

    Uses the given fiscal quarter when both ``fiscal_year`` and ``quarter`` are
    supplied, else the fiscal quarter containing ``today``.
    """

    if fiscal_year is not None and quarter is not None:
        months = fiscal_quarter_months(fiscal_year, quarter)
    else:
        months = current_quarter_months(today or date.today())
    return calculate_revenue_for_months(
        max_gross=max_gross,
        revenue_share=revenue_share,
        status=status,
        progress_percent=progress_percent,
        starting_date=starting_date,
        months=months,
    )
