"""
SubQuery / QueryResult -- the structured request and normalized response
exchanged between the tool-call handler and the query executor.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from erpcopilot.copilot.comparisons import DecreasingItem, LostItem, NewItem, Variation
from erpcopilot.core.config import get_settings

Operation = Literal["search", "count", "aggregate", "discover", "inspect", "distinct"]
CompareKind = Literal["mom", "yoy"]

OPERATORS = frozenset({"=", "!=", ">", ">=", "<", "<=", "in", "ilike"})

# Operations that read field metadata or histograms rather than business totals
METADATA_OPERATIONS = frozenset({"discover", "inspect", "distinct"})


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    label: str | None = None

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError(f"date_range end {self.end} is before start {self.start}")
        return self


def validate_condition(cond: Any) -> list[Any]:
    """Check one ``[field, operator, value]`` triple and return it as a list."""
    if not isinstance(cond, (list, tuple)) or len(cond) != 3:
        raise ValueError(f"Domain condition must be a [field, operator, value] triple, got {cond!r}")
    field_name, operator, value = cond
    if not isinstance(field_name, str) or not field_name:
        raise ValueError(f"Domain condition has an invalid field name: {field_name!r}")
    if operator not in OPERATORS:
        raise ValueError(f"Unsupported domain operator {operator!r}; allowed: {sorted(OPERATORS)}")
    if operator == "in" and not isinstance(value, (list, tuple)):
        raise ValueError(f"Operator 'in' needs a list value, got {value!r}")
    if isinstance(value, tuple):
        value = list(value)
    return [field_name, operator, value]


class SubQuery(BaseModel):
    """One structured query against a single record model."""

    model_config = ConfigDict(frozen=True)

    id: str = Field("q1", description="Caller-assigned id, echoed in results and provenance")
    model: str = Field(..., min_length=1, description="Odoo model name, e.g. 'sale.order'")
    operation: Operation = Field("search", description="search | count | aggregate | discover | inspect | distinct")
    domain: list[list[Any]] = Field(
        default_factory=list,
        description="Explicit AND-ed [field, operator, value] conditions; wins over filters when non-empty",
    )
    filters: str = Field("", description="Natural-language filter text, e.g. 'confirmed sales this month'")
    date_range: DateRange | None = Field(None, description="Explicit date range; skips date-text parsing")
    fields: list[str] = Field(default_factory=list, description="Projection override")
    group_by: list[str] = Field(default_factory=list, description="Group-by fields (also the field for 'distinct')")
    limit: int = Field(50, description="Maximum records or groups, clamped to the hard cap")
    order_by: str | None = Field(None, description="Sort spec, e.g. 'amount_total desc'")
    compare: CompareKind | None = Field(None, description="mom | yoy period comparison")
    retried: bool = Field(False, description="Internal one-shot self-correction flag")

    @field_validator("domain", mode="before")
    @classmethod
    def check_domain(cls, v: Any) -> list[list[Any]]:
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            raise ValueError("domain must be a list of conditions")
        return [validate_condition(c) for c in v]

    @field_validator("filters", mode="before")
    @classmethod
    def none_filters(cls, v: Any) -> str:
        return v or ""

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:
        settings = get_settings()
        if v is None:
            return settings.default_limit
        return max(1, min(int(v), settings.max_limit))


class GroupStats(BaseModel):
    count: int = 0
    total: float = 0.0
    id: int | None = None


class StateWarning(BaseModel):
    message: str
    field: str
    distribution: dict[str, int] = Field(default_factory=dict)
    total_records: int = 0
    suggestion: str = ""


class ComparisonBlock(BaseModel):
    """Current vs previous period for one grouped result (or the merged payload)."""

    kind: CompareKind
    current_label: str
    previous_label: str
    current_total: float = 0.0
    previous_total: float = 0.0
    variation: Variation
    current: dict[str, GroupStats] = Field(default_factory=dict)
    previous: dict[str, GroupStats] = Field(default_factory=dict)
    decreasing: list[DecreasingItem] = Field(default_factory=list)
    new: list[NewItem] = Field(default_factory=list)
    lost: list[LostItem] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Normalized outcome of one SubQuery."""

    model_config = ConfigDict(frozen=True)

    query_id: str
    model: str
    operation: str
    success: bool
    records: list[dict[str, Any]] | None = None
    count: int | None = None
    total: float | None = None
    grouped: dict[str, GroupStats] | None = None
    group_count: int | None = Field(None, description="True (uncapped) number of distinct groups")
    shown_groups: int | None = None
    details: dict[str, Any] | None = Field(None, description="discover / inspect / distinct payload")
    comparison: ComparisonBlock | None = None
    state_warning: StateWarning | None = None
    domain: list[list[Any]] = Field(default_factory=list, description="Resolved domain, for provenance")
    error: str | None = None
    cached: bool = False
    elapsed_ms: int = 0
