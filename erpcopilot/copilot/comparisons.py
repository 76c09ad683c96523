"""
Period-over-period comparison helpers.

Pure functions over dates and grouping maps; no remote calls.

  - ``periods_for``        month-over-month / year-over-year period pairs
  - ``variation``          delta, percent and trend between two values
  - ``compare_groups``     per-key variation over the union of two groupings
  - ``detect_decreasing`` / ``detect_new`` / ``detect_lost``
  - ``analyze_trend``      roll-up of a group comparison
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal, Mapping

CompareKind = Literal["mom", "yoy"]
Trend = Literal["up", "down", "flat"]

MONTH_NAMES = (
    "", "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

FLAT_PERCENT = 1.0
STABLE_BAND_PERCENT = 5.0


# ── Value objects ───────────────────────────────────────

@dataclass(frozen=True)
class ComparisonPeriod:
    start: date
    end: date
    label: str


@dataclass(frozen=True)
class ComparisonPeriods:
    current: ComparisonPeriod
    previous: ComparisonPeriod
    kind: CompareKind


@dataclass(frozen=True)
class Variation:
    value: float
    percent: float
    trend: Trend
    label: str


@dataclass(frozen=True)
class GroupComparison:
    current: float
    previous: float
    variation: Variation


@dataclass(frozen=True)
class DecreasingItem:
    name: str
    current_value: float
    previous_value: float
    variation: Variation


@dataclass(frozen=True)
class NewItem:
    name: str
    value: float


@dataclass(frozen=True)
class LostItem:
    name: str
    previous_value: float


@dataclass(frozen=True)
class TrendSummary:
    total_current: float
    total_previous: float
    overall: Variation
    growing: int
    declining: int
    stable: int


# ── Periods ─────────────────────────────────────────────

def month_period(year: int, month: int) -> ComparisonPeriod:
    last_day = calendar.monthrange(year, month)[1]
    return ComparisonPeriod(
        start=date(year, month, 1),
        end=date(year, month, last_day),
        label=f"{MONTH_NAMES[month]} {year}",
    )


def periods_for(reference: date, kind: CompareKind = "mom") -> ComparisonPeriods:
    """Current and previous calendar periods around *reference*.

    ``mom`` compares the month containing *reference* with the month before
    it (January rolls back to December of the previous year); ``yoy``
    compares it with the same month one year earlier.
    """
    year, month = reference.year, reference.month
    current = month_period(year, month)
    if kind == "yoy":
        previous = month_period(year - 1, month)
    elif month == 1:
        previous = month_period(year - 1, 12)
    else:
        previous = month_period(year, month - 1)
    return ComparisonPeriods(current=current, previous=previous, kind=kind)


def period_domain(period: ComparisonPeriod, date_field: str) -> list[list[Any]]:
    return [
        [date_field, ">=", period.start.isoformat()],
        [date_field, "<=", period.end.isoformat()],
    ]


# ── Variation ───────────────────────────────────────────

def variation(current: float, previous: float) -> Variation:
    """Change from *previous* to *current*.

    The percentage is relative to ``abs(previous)`` so the sign always
    follows the delta; a zero baseline reports 100% when *current* grew and
    0% otherwise.
    """
    delta = current - previous
    if previous != 0:
        percent = delta / abs(previous) * 100
    elif current > 0:
        percent = 100.0
    else:
        percent = 0.0

    if abs(percent) < FLAT_PERCENT:
        trend: Trend = "flat"
        label = "no significant change"
    elif percent > 0:
        trend = "up"
        label = f"up {abs(percent):.1f}%"
    else:
        trend = "down"
        label = f"down {abs(percent):.1f}%"
    return Variation(value=delta, percent=percent, trend=trend, label=label)


def _total(value: Any) -> float:
    """Grouping maps may hold plain numbers or objects with a ``total``."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Mapping):
        return float(value.get("total") or 0.0)
    return float(getattr(value, "total", 0.0) or 0.0)


def compare_groups(current: Mapping[str, Any], previous: Mapping[str, Any]) -> dict[str, GroupComparison]:
    """Per-key variation over the union of keys; missing keys count as zero."""
    keys = list(current.keys()) + [k for k in previous.keys() if k not in current]
    result: dict[str, GroupComparison] = {}
    for key in keys:
        cur = _total(current.get(key))
        prev = _total(previous.get(key))
        result[key] = GroupComparison(current=cur, previous=prev, variation=variation(cur, prev))
    return result


# ── Classification ──────────────────────────────────────

def detect_decreasing(
    current: Mapping[str, Any],
    previous: Mapping[str, Any],
    threshold: float = 20.0,
) -> list[DecreasingItem]:
    """Keys active in the previous period whose total fell by at least *threshold* percent.

    Sorted most negative first.
    """
    items: list[DecreasingItem] = []
    for name, prev_raw in previous.items():
        prev = _total(prev_raw)
        if prev <= 0:
            continue
        cur = _total(current.get(name))
        var = variation(cur, prev)
        if var.percent <= -threshold:
            items.append(DecreasingItem(name=name, current_value=cur, previous_value=prev, variation=var))
    items.sort(key=lambda i: i.variation.percent)
    return items


def detect_new(current: Mapping[str, Any], previous: Mapping[str, Any], min_value: float = 0.0) -> list[NewItem]:
    """Keys present only in the current period, above *min_value*, largest first."""
    items = [
        NewItem(name=name, value=_total(cur))
        for name, cur in current.items()
        if name not in previous and _total(cur) > min_value
    ]
    items.sort(key=lambda i: i.value, reverse=True)
    return items


def detect_lost(current: Mapping[str, Any], previous: Mapping[str, Any], min_value: float = 0.0) -> list[LostItem]:
    """Keys above *min_value* in the previous period and absent or zero now, largest first."""
    items = [
        LostItem(name=name, previous_value=_total(prev))
        for name, prev in previous.items()
        if _total(current.get(name)) == 0 and _total(prev) > min_value
    ]
    items.sort(key=lambda i: i.previous_value, reverse=True)
    return items


def analyze_trend(comparison: Mapping[str, GroupComparison]) -> TrendSummary:
    total_current = 0.0
    total_previous = 0.0
    growing = declining = stable = 0
    for item in comparison.values():
        total_current += item.current
        total_previous += item.previous
        if item.variation.percent > STABLE_BAND_PERCENT:
            growing += 1
        elif item.variation.percent < -STABLE_BAND_PERCENT:
            declining += 1
        else:
            stable += 1
    return TrendSummary(
        total_current=total_current,
        total_previous=total_previous,
        overall=variation(total_current, total_previous),
        growing=growing,
        declining=declining,
        stable=stable,
    )
