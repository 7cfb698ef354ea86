"""Pipeline stages and the distribution-started confirmation gate.

Stages are a closed enum. The bracketed codes used by the sales team's
spreadsheets (``【S-】`` and friends) are presentation only: they are produced
by :func:`status_label` and read back by :func:`parse_status_label`, and no
business rule ever compares against them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class PipelineStatus(str, Enum):
    EXPLORATION = "exploration"
    DISCOVERY = "discovery"
    WEAK_INTEREST = "weak_interest"
    INTEREST = "interest"
    STRONG_INTEREST = "strong_interest"
    AGREEMENT = "agreement"
    READY_TO_DELIVER = "ready_to_deliver"
    DISTRIBUTION_STARTED = "distribution_started"
    WON = "won"
    CLOSED = "closed"
    FAILED = "failed"


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    DECLINED = "declined"


STAGE_CODES: dict[PipelineStatus, str] = {
    PipelineStatus.EXPLORATION: "E",
    PipelineStatus.DISCOVERY: "D",
    PipelineStatus.WEAK_INTEREST: "C-",
    PipelineStatus.INTEREST: "C",
    PipelineStatus.STRONG_INTEREST: "C+",
    PipelineStatus.AGREEMENT: "B",
    PipelineStatus.READY_TO_DELIVER: "A",
    PipelineStatus.DISTRIBUTION_STARTED: "S-",
    PipelineStatus.WON: "S",
    PipelineStatus.CLOSED: "Z",
    PipelineStatus.FAILED: "F",
}
_BY_CODE = {code: status for status, code in STAGE_CODES.items()}

ZERO_REVENUE_STATUSES = frozenset({PipelineStatus.DISCOVERY, PipelineStatus.EXPLORATION, PipelineStatus.FAILED})

DEFAULT_STATUS = PipelineStatus.EXPLORATION

# first entry into these stages stamps the date field if it is still empty
MILESTONE_DATE_FIELDS: dict[PipelineStatus, str] = {
    PipelineStatus.WEAK_INTEREST: "interested_date",
    PipelineStatus.INTEREST: "interested_date",
    PipelineStatus.AGREEMENT: "acceptance_date",
    PipelineStatus.READY_TO_DELIVER: "ready_to_deliver_date",
    PipelineStatus.DISTRIBUTION_STARTED: "actual_starting_date",
    PipelineStatus.CLOSED: "closed_date",
}

MILESTONE_FIELDS = frozenset(MILESTONE_DATE_FIELDS.values())

CONFIRMATION_DWELL_DAYS = 7


def coerce_status(value: PipelineStatus | str | None) -> PipelineStatus | None:
    if value is None or isinstance(value, PipelineStatus):
        return value
    return PipelineStatus(value)


def is_zero_revenue(status: PipelineStatus | str | None) -> bool:
    if status is None:
        return False
    try:
        return coerce_status(status) in ZERO_REVENUE_STATUSES
    except ValueError:
        return False


def status_label(status: PipelineStatus | str | None) -> str:
    resolved = coerce_status(status)
    if resolved is None:
        return ""
    return f"【{STAGE_CODES[resolved]}】"


def parse_status_label(raw: str | None) -> PipelineStatus | None:
    """Accept ``【S-】``, ``[S-]``, ``S-`` or an enum value; ``None`` for blanks.

    Raises ``ValueError`` for anything else.
    """

    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    stripped = text.strip("【】[] ").upper()
    if stripped in _BY_CODE:
        return _BY_CODE[stripped]
    try:
        return PipelineStatus(text.lower())
    except ValueError:
        raise ValueError(f"unknown pipeline status: {text}") from None


class ConfirmationGateError(Exception):
    """Raised when a confirm action does not satisfy the distribution-started gate."""

    def __init__(self, reason: str, message: str, *, days_elapsed: int | None = None, days_remaining: int | None = None) -> None:
        self.reason = reason
        self.days_elapsed = days_elapsed
        self.days_remaining = days_remaining
        super().__init__(message)

    def to_detail(self) -> dict[str, object]:
        return {
            "message": str(self),
            "reason": self.reason,
            "days_elapsed": self.days_elapsed,
            "days_remaining": self.days_remaining,
        }


@dataclass(slots=True, frozen=True)
class GateCheck:
    days_elapsed: int
    days_remaining: int


def check_confirmation_gate(
    status: PipelineStatus | str | None,
    actual_starting_date: date | None,
    today: date,
) -> GateCheck:
    if coerce_status(status) is not PipelineStatus.DISTRIBUTION_STARTED:
        raise ConfirmationGateError(
            "invalid_status",
            f"pipeline must be in {status_label(PipelineStatus.DISTRIBUTION_STARTED)} to confirm",
        )
    if actual_starting_date is None:
        raise ConfirmationGateError(
            "missing_actual_starting_date",
            "actual_starting_date must be set before confirming",
        )

    days_elapsed = (today - actual_starting_date).days
    if days_elapsed < CONFIRMATION_DWELL_DAYS:
        remaining = CONFIRMATION_DWELL_DAYS - days_elapsed
        raise ConfirmationGateError(
            "dwell_time_not_met",
            f"distribution must run {CONFIRMATION_DWELL_DAYS} days before confirmation; {remaining} day(s) remaining",
            days_elapsed=days_elapsed,
            days_remaining=remaining,
        )
    return GateCheck(days_elapsed=days_elapsed, days_remaining=0)


def check_decline_allowed(status: PipelineStatus | str | None) -> None:
    if coerce_status(status) is not PipelineStatus.DISTRIBUTION_STARTED:
        raise ConfirmationGateError(
            "invalid_status",
            f"pipeline must be in {status_label(PipelineStatus.DISTRIBUTION_STARTED)} to decline",
        )
