"""
Rule-based lateral insights.

Given the normalized results of one orchestrated call (and optionally a
period comparison), emit short observations the caller may surface
without being asked: revenue concentration, dominant entities, trend
reversals, churn, stale pipeline, overdue activities, inactive users.

Each rule fires independently and carries a fixed priority that is only
used to rank and truncate the final list.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Literal, Mapping

from erpcopilot.copilot.comparisons import (
    GroupComparison,
    analyze_trend,
    detect_decreasing,
    detect_lost,
    detect_new,
)
from erpcopilot.copilot.spec import QueryResult
from erpcopilot.core.config import get_settings
from erpcopilot.core.logging import get_logger
from erpcopilot.core.utils import format_compact, make_clock
from erpcopilot.erp.rows import as_date, as_number, display_label

logger = get_logger(__name__)

Severity = Literal["alert", "warning", "info", "success"]

FINANCIAL_TYPES = frozenset({"sales", "invoices", "purchases", "payments", "products"})

CONCENTRATION_SHARE = 50.0
DOMINANCE_RATIO = 3.0
TREND_PERCENT = 10.0
DECLINE_PERCENT = 30.0
CHURN_FLOOR = 1000.0
STALE_DAYS = 30
INACTIVE_DAYS = 30
RECENT_DAYS = 7
MISSING_EMAIL_SHARE = 0.3


@dataclass(frozen=True)
class Insight:
    severity: Severity
    title: str
    description: str
    priority: int
    action: str | None = None


def _plural(n: int, singular: str, plural: str | None = None) -> str:
    return f"{n} {singular if n == 1 else (plural or singular + 's')}"


def _sorted_groups(result: QueryResult) -> list[tuple[str, Any]]:
    return sorted((result.grouped or {}).items(), key=lambda kv: kv[1].total, reverse=True)


def _days_since(value: Any, today: date) -> int | None:
    d = as_date(value)
    return (today - d).days if d else None


# ── Financial rules (sales, invoices, purchases, ...) ───

def _financial(result: QueryResult) -> list[Insight]:
    insights: list[Insight] = []
    entries = _sorted_groups(result)
    grand = result.total or sum(g.total for _, g in entries)

    if len(entries) >= 3:
        top3 = entries[:3]
        top3_total = sum(g.total for _, g in top3)
        share = top3_total / grand * 100 if grand > 0 else 0.0
        if share > CONCENTRATION_SHARE:
            insights.append(Insight(
                severity="warning",
                title="High revenue concentration",
                description=f"The top 3 represent {share:.0f}% of the total: {', '.join(n for n, _ in top3)}",
                priority=4,
                action="Consider diversifying to reduce dependency on a few accounts",
            ))
        else:
            insights.append(Insight(
                severity="info",
                title="Top 3",
                description=" | ".join(f"{n}: {format_compact(g.total)}" for n, g in top3),
                priority=2,
            ))

    if len(entries) >= 2:
        (first_name, first), (_, second) = entries[0], entries[1]
        if first.total > 0 and first.total > second.total * DOMINANCE_RATIO:
            share = first.total / grand * 100 if grand > 0 else 100.0
            insights.append(Insight(
                severity="info",
                title="Dominant entity",
                description=f"{first_name} accounts for {share:.0f}% of the total",
                priority=3,
            ))
    return insights


def _period_changes(comparisons: Mapping[str, GroupComparison]) -> list[Insight]:
    """Trend, decline and churn across the compared groups; once per call."""
    insights: list[Insight] = []
    if comparisons:
        trend = analyze_trend(comparisons)
        vs = f"({format_compact(trend.total_current)} vs {format_compact(trend.total_previous)})"
        if trend.overall.percent > TREND_PERCENT:
            insights.append(Insight(
                severity="success",
                title="Positive growth",
                description=f"The total is {trend.overall.label} {vs}",
                priority=5,
            ))
        elif trend.overall.percent < -TREND_PERCENT:
            insights.append(Insight(
                severity="alert",
                title="Decline",
                description=f"The total is {trend.overall.label} {vs}",
                priority=5,
                action="Review the causes of the drop",
            ))

        # Zero on one side means absent in that period
        current = {k: c.current for k, c in comparisons.items() if c.current}
        previous = {k: c.previous for k, c in comparisons.items() if c.previous}

        declining = detect_decreasing(current, previous, DECLINE_PERCENT)
        if declining:
            insights.append(Insight(
                severity="warning",
                title=f"{_plural(len(declining), 'account')} buying less",
                description=" | ".join(f"{d.name}: {d.variation.label}" for d in declining[:3]),
                priority=4,
                action="Reach out to these accounts to retain them",
            ))

        lost = detect_lost(current, previous, CHURN_FLOOR)
        if lost:
            insights.append(Insight(
                severity="alert",
                title=f"{_plural(len(lost), 'account')} without activity",
                description="Active last period but not this one: " + ", ".join(i.name for i in lost[:3]),
                priority=5,
                action="Re-engage these accounts",
            ))

        new = detect_new(current, previous, CHURN_FLOOR)
        if new:
            insights.append(Insight(
                severity="success",
                title=f"{_plural(len(new), 'new account')}",
                description="New this period: " + ", ".join(f"{i.name} ({format_compact(i.value)})" for i in new[:3]),
                priority=3,
            ))
    return insights


# ── Model-family rules ──────────────────────────────────

def _customers(result: QueryResult) -> list[Insight]:
    insights: list[Insight] = []
    if result.count is not None:
        insights.append(Insight(
            severity="info",
            title="Total contacts",
            description=f"{_plural(result.count, 'contact')} match",
            priority=1,
        ))
    records = result.records or []
    if records:
        missing = sum(1 for r in records if not r.get("email"))
        if missing > len(records) * MISSING_EMAIL_SHARE:
            insights.append(Insight(
                severity="warning",
                title="Incomplete contact data",
                description=f"{missing} without email ({missing / len(records) * 100:.0f}%)",
                priority=2,
                action="Complete the contact information",
            ))
    return insights


def _crm(result: QueryResult, today: date) -> list[Insight]:
    insights: list[Insight] = []
    records = result.records or []
    if records:
        pipeline = sum(as_number(r.get("expected_revenue")) for r in records)
        if pipeline > 0:
            insights.append(Insight(
                severity="info",
                title="Pipeline value",
                description=f"{format_compact(pipeline)} in open opportunities",
                priority=3,
            ))
        stale = [
            r for r in records
            if (_days_since(r.get("create_date"), today) or 0) > STALE_DAYS
            and as_number(r.get("probability")) < 100
        ]
        if stale:
            insights.append(Insight(
                severity="warning",
                title="Stale opportunities",
                description=f"{_plural(len(stale), 'opportunity', 'opportunities')} older than {STALE_DAYS} days still open",
                priority=4,
                action="Review and update these opportunities",
            ))
        hot = [r for r in records if 70 <= as_number(r.get("probability")) < 100]
        if hot:
            value = sum(as_number(r.get("expected_revenue")) for r in hot)
            insights.append(Insight(
                severity="success",
                title="Hot opportunities",
                description=f"{len(hot)} with probability of 70% or more ({format_compact(value)})",
                priority=4,
            ))
    if result.grouped:
        insights.append(Insight(
            severity="info",
            title="CRM distribution",
            description=" | ".join(f"{n}: {g.count}" for n, g in list(result.grouped.items())[:4]),
            priority=2,
        ))
    return insights


def _users(result: QueryResult, today: date) -> list[Insight]:
    records = result.records or []
    if not records:
        return []
    insights: list[Insight] = []
    inactive = [
        r for r in records
        if (days := _days_since(r.get("login_date"), today)) is None or days > INACTIVE_DAYS
    ]
    if inactive:
        names = ", ".join(display_label(r.get("name"), "?") for r in inactive[:3])
        insights.append(Insight(
            severity="warning",
            title="Inactive users",
            description=f"{_plural(len(inactive), 'user')} without login for over {INACTIVE_DAYS} days: {names}",
            priority=3,
            action="Check whether these users still need access",
        ))
    recent = [
        r for r in records
        if (days := _days_since(r.get("login_date"), today)) is not None and days <= RECENT_DAYS
    ]
    insights.append(Insight(
        severity="info",
        title="Active users",
        description=f"{_plural(len(recent), 'user')} logged in during the last {RECENT_DAYS} days",
        priority=2,
    ))
    return insights


def _activities(result: QueryResult, today: date) -> list[Insight]:
    insights: list[Insight] = []
    records = result.records or []
    deadlines = [as_date(r.get("date_deadline")) for r in records]
    overdue = sum(1 for d in deadlines if d is not None and d < today)
    due_today = sum(1 for d in deadlines if d == today)
    if overdue:
        insights.append(Insight(
            severity="alert",
            title="Overdue activities",
            description=f"{_plural(overdue, 'activity', 'activities')} past the deadline",
            priority=5,
            action="Complete or reschedule these activities",
        ))
    if due_today:
        insights.append(Insight(
            severity="warning",
            title="Due today",
            description=f"{due_today} due today",
            priority=4,
        ))
    if result.grouped:
        insights.append(Insight(
            severity="info",
            title="Activity distribution",
            description=" | ".join(f"{n}: {g.count}" for n, g in list(result.grouped.items())[:4]),
            priority=2,
        ))
    return insights


def _general(result: QueryResult) -> list[Insight]:
    insights: list[Insight] = []
    if result.count is not None:
        insights.append(Insight(
            severity="info",
            title="Records found",
            description=_plural(result.count, "record"),
            priority=1,
        ))
    if result.total is not None:
        insights.append(Insight(
            severity="info",
            title="Total",
            description=format_compact(result.total),
            priority=2,
        ))
    return insights


# ── Public API ──────────────────────────────────────────

def generate_insights(
    query_type: str,
    results: Iterable[QueryResult],
    comparisons: Mapping[str, GroupComparison] | None = None,
    today: date | datetime | None = None,
    max_insights: int | None = None,
) -> list[Insight]:
    """Ranked insights for successful *results*.

    Parameters
    ----------
    query_type : str
        Coarse classifier from the model registry (sales, invoices,
        customers, crm, users, activities, ... or general).
    results : iterable of QueryResult
        Failed results are skipped.
    comparisons : mapping | None
        Per-group comparison (see ``compare_groups``) enabling trend,
        decline and churn rules.
    today : date | None
        Reference day for ageing rules; defaults to the engine clock.
    max_insights : int | None
        Cap on the returned list; defaults to ``Settings.max_insights``.
    """
    if today is None:
        today = make_clock()().date()
    elif isinstance(today, datetime):
        today = today.date()
    cap = get_settings().max_insights if max_insights is None else max_insights

    insights: list[Insight] = []
    ok = [r for r in results if r.success]
    for result in ok:
        if query_type in FINANCIAL_TYPES:
            insights.extend(_financial(result))
        elif query_type == "customers":
            insights.extend(_customers(result))
        elif query_type == "crm":
            insights.extend(_crm(result, today))
        elif query_type == "users":
            insights.extend(_users(result, today))
        elif query_type == "activities":
            insights.extend(_activities(result, today))
        else:
            insights.extend(_general(result))
    if ok and query_type in FINANCIAL_TYPES and comparisons:
        insights.extend(_period_changes(comparisons))

    insights.sort(key=lambda i: i.priority, reverse=True)
    unique: list[Insight] = []
    seen: set[str] = set()
    for ins in insights:
        if ins.title not in seen:
            seen.add(ins.title)
            unique.append(ins)
    logger.debug("Generated %d insights (type=%s), keeping %d", len(unique), query_type, cap)
    return unique[:cap]


_SEVERITY_MARK = {"alert": "[!]", "warning": "[~]", "info": "[i]", "success": "[+]"}


def format_insights_as_text(insights: list[Insight]) -> str:
    """Markdown block for appending to a tool response."""
    if not insights:
        return ""
    lines = ["**Insights:**"]
    for ins in insights:
        line = f"- {_SEVERITY_MARK[ins.severity]} **{ins.title}**: {ins.description}"
        if ins.action:
            line += f" _({ins.action})_"
        lines.append(line)
    return "\n".join(lines)
