"""
Chart series for query results.

Given a QueryResult, returns a renderer-neutral chart specification
(labels + datasets) the caller can hand to any charting library:
  - bar   (top groups of an aggregate)
  - pie   (a handful of groups that sum to the whole)
  - line  (records over the model's date field)
Returns ``None`` when the result has no natural series.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from erpcopilot.copilot.spec import QueryResult
from erpcopilot.core.logging import get_logger
from erpcopilot.erp.rows import as_date, as_number
from erpcopilot.governance.model_registry import ModelRegistry, load_registry

logger = get_logger(__name__)

# ── Chart types ─────────────────────────────────────────

CHART_BAR = "bar"
CHART_LINE = "line"
CHART_PIE = "pie"

MAX_BARS = 10
MAX_PIE_SLICES = 6


@dataclass
class ChartSpec:
    """Labels plus one or more numeric series."""
    chart_type: str
    title: str
    labels: list[str] = field(default_factory=list)
    datasets: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chart_type": self.chart_type,
            "title": self.title,
            "labels": list(self.labels),
            "datasets": [dict(d) for d in self.datasets],
        }


def _title(model: str, group_by: str | None = None) -> str:
    base = model.replace(".", " ").title()
    return f"{base} by {group_by.replace('_', ' ')}" if group_by else base


# ── Chart selection logic ───────────────────────────────


def suggest_chart(
    result: QueryResult,
    registry: ModelRegistry | None = None,
    group_by: str | None = None,
) -> ChartSpec | None:
    """Choose a chart for *result*.

    Parameters
    ----------
    result : QueryResult
        A successful executor result.
    registry : ModelRegistry | None
        Supplies the model's date and amount fields; defaults to the
        packaged registry.
    group_by : str | None
        Grouping field, used only for the title.
    """
    if not result.success:
        return None

    if result.grouped:
        use_totals = any(g.total for g in result.grouped.values())
        measure = "Total" if use_totals else "Count"
        entries = sorted(
            result.grouped.items(),
            key=lambda kv: kv[1].total if use_totals else kv[1].count,
            reverse=True,
        )
        # Pie only when every group is present
        whole = result.group_count is None or result.group_count == len(entries)
        if whole and 1 < len(entries) <= MAX_PIE_SLICES:
            chart_type = CHART_PIE
        else:
            chart_type = CHART_BAR
            entries = entries[:MAX_BARS]
        return ChartSpec(
            chart_type=chart_type,
            title=_title(result.model, group_by),
            labels=[name for name, _ in entries],
            datasets=[{
                "label": measure,
                "data": [g.total if use_totals else g.count for _, g in entries],
            }],
        )

    spec = (registry or load_registry()).lookup(result.model)
    records = result.records or []
    if not spec.amount_field or len(records) < 2:
        return None

    points = []
    for record in records:
        day = as_date(record.get(spec.date_field))
        if day is not None and spec.amount_field in record:
            points.append((day, as_number(record[spec.amount_field])))
    if len(points) < 2:
        logger.debug("No dated series for %s (date field %s)", result.model, spec.date_field)
        return None

    points.sort(key=lambda p: p[0])
    return ChartSpec(
        chart_type=CHART_LINE,
        title=f"{_title(result.model)} over time",
        labels=[d.isoformat() for d, _ in points],
        datasets=[{"label": spec.amount_field, "data": [v for _, v in points]}],
    )
