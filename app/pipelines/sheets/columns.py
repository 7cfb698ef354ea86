"""Versioned column layouts for the two quarterly sheet flavors.

Both directions of translation read from these maps. A change to the
external sheet's layout means a new map version here, never a change to
the sync logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

COLUMN_MAP_VERSION = "2025.2"

SALES_GROUP = "sales"
CS_GROUP = "cs"
KNOWN_GROUPS = (SALES_GROUP, CS_GROUP)


class ColumnKind(str, Enum):
    IDENTIFIER = "identifier"
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    PERCENT = "percent"
    DATE = "date"
    STATUS = "status"


@dataclass(slots=True, frozen=True)
class ColumnSpec:
    field: str
    index: int
    kind: ColumnKind = ColumnKind.TEXT
    required: bool = False
    # formula columns are owned by the sheet and never read or written
    formula: bool = False
    inbound: bool = True
    outbound: bool = True


@dataclass(slots=True, frozen=True)
class ColumnMap:
    group: str
    version: str
    columns: tuple[ColumnSpec, ...]
    _by_field: dict[str, ColumnSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_field", {column.field: column for column in self.columns})

    @property
    def identifier(self) -> ColumnSpec:
        return next(column for column in self.columns if column.kind is ColumnKind.IDENTIFIER)

    @property
    def width(self) -> int:
        return max(column.index for column in self.columns) + 1

    @property
    def writable(self) -> tuple[ColumnSpec, ...]:
        return tuple(column for column in self.columns if column.outbound and not column.formula)

    @property
    def readable(self) -> tuple[ColumnSpec, ...]:
        return tuple(column for column in self.columns if column.inbound and not column.formula)

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(column.field for column in self.columns if column.required)

    def get(self, field_name: str) -> ColumnSpec | None:
        return self._by_field.get(field_name)

    def formula_indexes(self) -> frozenset[int]:
        return frozenset(column.index for column in self.columns if column.formula)


_SHARED_HEAD: tuple[ColumnSpec, ...] = (
    ColumnSpec("id", 0, ColumnKind.IDENTIFIER, required=True),
    ColumnSpec("key", 1, formula=True),
    ColumnSpec("classification", 2),
    ColumnSpec("poc", 3, required=True),
    ColumnSpec("team", 4),
    ColumnSpec("pid", 6),
    ColumnSpec("publisher", 7, required=True),
    ColumnSpec("mid", 8),
    ColumnSpec("domain", 9),
    ColumnSpec("channel", 11),
    ColumnSpec("competitors", 12),
    ColumnSpec("description", 14),
    ColumnSpec("product", 15),
    ColumnSpec("day_gross", 16, ColumnKind.DECIMAL, formula=True),
    ColumnSpec("day_net_rev", 17, ColumnKind.DECIMAL, formula=True),
    ColumnSpec("imp", 18, ColumnKind.INTEGER),
    ColumnSpec("ecpm", 19, ColumnKind.DECIMAL),
    ColumnSpec("max_gross", 20, ColumnKind.DECIMAL, formula=True),
    ColumnSpec("revenue_share", 21, ColumnKind.PERCENT),
)

_SHARED_TIMELINE: tuple[ColumnSpec, ...] = (
    ColumnSpec("starting_date", 28, ColumnKind.DATE),
    ColumnSpec("status", 29, ColumnKind.STATUS),
    ColumnSpec("progress_percent", 30, ColumnKind.PERCENT),
    ColumnSpec("proposal_date", 31, ColumnKind.DATE),
    ColumnSpec("interested_date", 32, ColumnKind.DATE),
    ColumnSpec("acceptance_date", 33, ColumnKind.DATE),
)

_SHARED_TOTALS: tuple[ColumnSpec, ...] = (
    ColumnSpec("q_gross", 37, ColumnKind.DECIMAL, inbound=False),
    ColumnSpec("q_net_rev", 38, ColumnKind.DECIMAL, inbound=False),
)

SALES_COLUMNS = ColumnMap(
    group=SALES_GROUP,
    version=COLUMN_MAP_VERSION,
    columns=(
        *_SHARED_HEAD,
        ColumnSpec("ma_mi", 5),
        ColumnSpec("zid", 10),
        ColumnSpec("next_action", 23),
        ColumnSpec("action_detail", 24),
        ColumnSpec("action_progress", 25),
        *_SHARED_TIMELINE,
        ColumnSpec("ready_to_deliver_date", 34, ColumnKind.DATE),
        ColumnSpec("closed_date", 35, ColumnKind.DATE),
        ColumnSpec("close_won_date", 36, ColumnKind.DATE, inbound=False),
        *_SHARED_TOTALS,
    ),
)

CS_COLUMNS = ColumnMap(
    group=CS_GROUP,
    version=COLUMN_MAP_VERSION,
    columns=(
        *_SHARED_HEAD,
        ColumnSpec("action_date", 23, ColumnKind.DATE),
        ColumnSpec("action_detail", 24),
        ColumnSpec("action_progress", 25),
        ColumnSpec("next_action", 26),
        *_SHARED_TIMELINE,
        ColumnSpec("ready_to_deliver_date", 34, ColumnKind.DATE),
        ColumnSpec("actual_starting_date", 35, ColumnKind.DATE),
        ColumnSpec("closed_date", 36, ColumnKind.DATE),
        *_SHARED_TOTALS,
    ),
)

_MAPS = {SALES_GROUP: SALES_COLUMNS, CS_GROUP: CS_COLUMNS}


def column_map_for(group: str) -> ColumnMap:
    try:
        return _MAPS[group.lower()]
    except KeyError:
        raise ValueError(f"unknown pipeline group: {group}") from None
