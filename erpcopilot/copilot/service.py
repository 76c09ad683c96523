"""
Copilot service -- orchestrates validate -> scope -> execute -> compare -> merge.

One tool call carries up to five sub-queries.  They run concurrently on a
small thread pool against a single shared deadline; results come back in
request order and are merged into one payload together with optional
period comparisons, insights, a chart series and per-sub-query provenance.

A sub-query that fails validation or execution is reported as a failed
result next to its siblings; it never aborts the call.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from erpcopilot.copilot.cache import ResultCache
from erpcopilot.copilot.chart_generator import suggest_chart
from erpcopilot.copilot.comparisons import (
    ComparisonPeriods,
    compare_groups,
    detect_decreasing,
    detect_lost,
    detect_new,
    periods_for,
    variation,
)
from erpcopilot.copilot.filter_builder import has_condition_on, resolve_date_window
from erpcopilot.copilot.insights import Insight, generate_insights
from erpcopilot.copilot.spec import (
    ComparisonBlock,
    DateRange,
    GroupStats,
    QueryResult,
    SubQuery,
)
from erpcopilot.core.config import get_settings
from erpcopilot.core.logging import get_logger
from erpcopilot.core.utils import Clock, Deadline, make_clock, timer
from erpcopilot.erp.client import RecordClient
from erpcopilot.erp.executor import QueryExecutor
from erpcopilot.erp.rows import as_date
from erpcopilot.governance.model_registry import ModelRegistry, load_registry

logger = get_logger(__name__)


# ── Request / response models ───────────────────────────

class ToolRequest(BaseModel):
    """Arguments of one tool call."""

    queries: list[Any] = Field(default_factory=list, description="SubQuery objects or raw dicts")
    include_comparison: bool = Field(False, description="Attach previous-period comparisons")
    include_insights: bool = Field(True, description="Attach rule-based insights")


class Provenance(BaseModel):
    id: str
    model: str
    filters: str = ""
    domain: list[list[Any]] = Field(default_factory=list)


class ToolPayload(BaseModel):
    """Merged answer for one tool call."""

    success: bool
    records: list[dict[str, Any]] | None = None
    count: int = 0
    total: float = 0.0
    grouped: dict[str, GroupStats] | None = None
    comparison: ComparisonBlock | None = None
    insights: list[Insight] | None = None
    chart: dict[str, Any] | None = None
    cached: bool = False
    elapsed_ms: int = 0
    results: list[QueryResult] = Field(default_factory=list)
    provenance: list[Provenance] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ── Service ─────────────────────────────────────────────

class QueryService:
    """Entry point for tool calls against one record system.

    Parameters
    ----------
    client : RecordClient
        Record-system client; owned by the caller.
    cache : ResultCache | None
        Shared result cache; a fresh one is created when omitted.
    registry : ModelRegistry | None
        Model configuration; defaults to the packaged registry.
    tenant_id : str | None
        Cache namespace; defaults to ``Settings.tenant_id``.
    clock : Clock | None
        Source of "now"; defaults to the configured timezone.
    max_workers : int
        Thread-pool size for concurrent sub-queries.
    """

    def __init__(
        self,
        client: RecordClient,
        cache: ResultCache | None = None,
        registry: ModelRegistry | None = None,
        tenant_id: str | None = None,
        clock: Clock | None = None,
        max_workers: int = 5,
    ):
        self._registry = registry or load_registry()
        self._clock = clock or make_clock()
        self._cache = cache if cache is not None else ResultCache()
        self._executor = QueryExecutor(
            client, self._cache, registry=self._registry, tenant_id=tenant_id, clock=self._clock,
        )
        self._max_workers = max(1, max_workers)

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    @property
    def cache(self) -> ResultCache:
        return self._cache

    def ask(
        self,
        request: ToolRequest | dict[str, Any],
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ToolPayload:
        """Run every sub-query of *request* and merge the outcome.

        Parameters
        ----------
        request : ToolRequest | dict
            Sub-queries plus comparison / insight switches.
        timeout : float | None
            Deadline in seconds shared by every remote call of this request.
        cancel_event : threading.Event | None
            Set by the caller to abandon outstanding work.
        """
        if not isinstance(request, ToolRequest):
            request = ToolRequest.model_validate(request)

        settings = get_settings()
        warnings: list[str] = []
        raw = list(request.queries)
        if len(raw) > settings.max_subqueries:
            msg = f"Only the first {settings.max_subqueries} of {len(raw)} queries were run"
            logger.warning(msg)
            warnings.append(msg)
            raw = raw[:settings.max_subqueries]

        with timer() as t:
            deadline = Deadline.after(timeout, cancel_event)
            today = self._clock().date()
            prepared = [
                self._prepare(item, i, request.include_comparison, today)
                for i, item in enumerate(raw, 1)
            ]
            results = self._run_all(prepared, deadline)

            block: ComparisonBlock | None = None
            if request.include_comparison:
                results, block = self._compare(prepared, results, deadline, today)

            payload = self._merge(results)
            insights = None
            if request.include_insights:
                insights = self._insights(prepared, results, block, today)
            chart = self._chart(prepared, results)

        logger.info(
            "ask | queries=%d ok=%d elapsed_ms=%d",
            len(results), sum(1 for r in results if r.success), t["elapsed_ms"],
        )
        return ToolPayload(
            **payload,
            comparison=block,
            insights=insights,
            chart=chart,
            elapsed_ms=t["elapsed_ms"],
            results=results,
            provenance=[_provenance(item, result) for item, result in zip(prepared, results)],
            warnings=warnings,
        )

    # ── Preparation ─────────────────────────────────────

    def _prepare(self, item: Any, index: int, include_comparison: bool, today: date) -> SubQuery | QueryResult:
        """Validate one entry; a bad entry becomes a failed result."""
        if isinstance(item, SubQuery):
            query = item
        else:
            try:
                query = SubQuery.model_validate(item)
            except ValidationError as exc:
                raw = item if isinstance(item, dict) else {}
                logger.warning("Sub-query %d rejected: %s", index, exc.errors()[0].get("msg", exc))
                return QueryResult(
                    query_id=str(raw.get("id") or f"q{index}"),
                    model=str(raw.get("model") or ""),
                    operation=str(raw.get("operation") or "search"),
                    success=False,
                    error=f"Invalid query: {exc}",
                )

        if include_comparison and query.compare and not self._has_date_scope(query):
            current = periods_for(today, query.compare).current
            logger.info("Scoping %s to %s for comparison", query.id, current.label)
            query = query.model_copy(update={
                "date_range": DateRange(start=current.start, end=current.end, label=current.label),
            })
        return query

    def _has_date_scope(self, query: SubQuery) -> bool:
        if query.date_range is not None:
            return True
        if query.domain:
            return has_condition_on(query.domain, self._registry.lookup(query.model).date_field)
        return resolve_date_window(query.filters, self._clock()) is not None

    # ── Execution ───────────────────────────────────────

    def _run_all(self, items: list[SubQuery | QueryResult], deadline: Deadline) -> list[QueryResult]:
        """Execute every SubQuery concurrently; results keep input order."""
        results: list[Any] = list(items)
        runnable = [(i, q) for i, q in enumerate(items) if isinstance(q, SubQuery)]
        if not runnable:
            return results
        workers = min(self._max_workers, len(runnable))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subquery") as pool:
            futures = [(i, pool.submit(self._executor.execute, q, deadline)) for i, q in runnable]
            for i, future in futures:
                results[i] = future.result()
        return results

    # ── Comparison ──────────────────────────────────────

    def _periods(self, query: SubQuery, model: str, today: date) -> ComparisonPeriods:
        """Comparison periods anchored on the query's own window, else today."""
        date_field = self._registry.lookup(model).date_field
        anchor: date | None = None
        if query.date_range is not None:
            anchor = query.date_range.start
        elif query.domain:
            anchor = next(
                (as_date(v) for f, op, v in query.domain if f == date_field and op in (">=", ">", "=")),
                None,
            )
        else:
            window = resolve_date_window(query.filters, today)
            anchor = window[0] if window else None
        return periods_for(anchor or today, query.compare or "mom")

    def _previous_query(self, query: SubQuery, model: str, periods: ComparisonPeriods) -> SubQuery:
        """Same query over the previous period; only date conditions change."""
        date_fields = {
            self._registry.lookup(query.model).date_field,
            self._registry.lookup(model).date_field,
        }
        previous = periods.previous
        update: dict[str, Any] = {
            "id": f"{query.id}_prev",
            "date_range": DateRange(start=previous.start, end=previous.end, label=previous.label),
        }
        if query.domain:
            update["domain"] = [c for c in query.domain if c[0] not in date_fields]
        return query.model_copy(update=update)

    def _compare(
        self,
        prepared: list[SubQuery | QueryResult],
        results: list[QueryResult],
        deadline: Deadline,
        today: date,
    ) -> tuple[list[QueryResult], ComparisonBlock | None]:
        targets: list[tuple[int, SubQuery, ComparisonPeriods]] = []
        for i, (item, result) in enumerate(zip(prepared, results)):
            if isinstance(item, SubQuery) and item.compare and result.success and result.grouped is not None:
                targets.append((i, item, self._periods(item, result.model, today)))
        if not targets:
            return results, None

        previous_queries = [self._previous_query(q, results[i].model, p) for i, q, p in targets]
        previous_results = self._run_all(previous_queries, deadline)

        results = list(results)
        blocks: list[ComparisonBlock] = []
        for (i, query, periods), prev in zip(targets, previous_results):
            if not prev.success:
                logger.warning("Previous-period query for %s failed: %s", query.id, prev.error)
                continue
            block = _comparison_block(results[i], prev, periods)
            results[i] = results[i].model_copy(update={"comparison": block})
            blocks.append(block)
        return results, _merge_blocks(blocks)

    # ── Insights / chart ────────────────────────────────

    def _insights(
        self,
        prepared: list[SubQuery | QueryResult],
        results: list[QueryResult],
        block: ComparisonBlock | None,
        today: date,
    ) -> list[Insight]:
        first = next((item for item in prepared if isinstance(item, SubQuery)), None)
        if first is None:
            return []
        query_type = self._registry.lookup(first.model).insight_type
        comparisons = compare_groups(block.current, block.previous) if block else None
        return generate_insights(query_type, results, comparisons, today=today)

    def _chart(self, prepared: list[SubQuery | QueryResult], results: list[QueryResult]) -> dict[str, Any] | None:
        candidates = [
            (item, r) for item, r in zip(prepared, results) if r.success and (r.grouped or r.records)
        ]
        candidates.sort(key=lambda pair: not pair[1].grouped)
        for item, result in candidates:
            group_by = item.group_by[0] if isinstance(item, SubQuery) and item.group_by else None
            try:
                chart = suggest_chart(result, self._registry, group_by=group_by)
            except Exception:
                logger.warning("Chart generation failed -- continuing without chart")
                return None
            if chart is not None:
                return chart.to_dict()
        return None

    # ── Merge ───────────────────────────────────────────

    def _is_monetary(self, result: QueryResult) -> bool:
        """Whether ``result.total`` is a money sum rather than a record count."""
        return result.operation != "count" and bool(self._registry.lookup(result.model).amount_field)

    def _merge(self, results: list[QueryResult]) -> dict[str, Any]:
        ok = [r for r in results if r.success]
        records: list[dict[str, Any]] | None = None
        grouped: dict[str, GroupStats] | None = None
        for r in ok:
            if r.records is not None:
                records = (records or []) + list(r.records)
            if r.grouped is not None:
                grouped = _merge_groups(grouped or {}, r.grouped)
        return {
            "success": bool(ok),
            "records": records,
            "count": sum(r.count or 0 for r in ok),
            # Models without an amount field report counts in total
            "total": sum(r.total or 0.0 for r in ok if self._is_monetary(r)),
            "grouped": grouped,
            "cached": bool(ok) and all(r.cached for r in ok),
        }


# ── Helpers ─────────────────────────────────────────────

def _merge_groups(into: dict[str, GroupStats], other: dict[str, GroupStats]) -> dict[str, GroupStats]:
    merged = dict(into)
    for key, stats in other.items():
        if key in merged:
            prev = merged[key]
            merged[key] = GroupStats(
                count=prev.count + stats.count,
                total=prev.total + stats.total,
                id=prev.id if prev.id is not None else stats.id,
            )
        else:
            merged[key] = stats
    return merged


def _comparison_block(current: QueryResult, previous: QueryResult, periods: ComparisonPeriods) -> ComparisonBlock:
    cur_groups = current.grouped or {}
    prev_groups = previous.grouped or {}
    cur_total = current.total or 0.0
    prev_total = previous.total or 0.0
    return ComparisonBlock(
        kind=periods.kind,
        current_label=periods.current.label,
        previous_label=periods.previous.label,
        current_total=cur_total,
        previous_total=prev_total,
        variation=variation(cur_total, prev_total),
        current=cur_groups,
        previous=prev_groups,
        decreasing=detect_decreasing(cur_groups, prev_groups),
        new=detect_new(cur_groups, prev_groups),
        lost=detect_lost(cur_groups, prev_groups),
    )


def _merge_blocks(blocks: list[ComparisonBlock]) -> ComparisonBlock | None:
    if not blocks:
        return None
    if len(blocks) == 1:
        return blocks[0]
    first = blocks[0]
    current: dict[str, GroupStats] = {}
    previous: dict[str, GroupStats] = {}
    for b in blocks:
        current = _merge_groups(current, b.current)
        previous = _merge_groups(previous, b.previous)
    cur_total = sum(b.current_total for b in blocks)
    prev_total = sum(b.previous_total for b in blocks)
    return ComparisonBlock(
        kind=first.kind,
        current_label=first.current_label,
        previous_label=first.previous_label,
        current_total=cur_total,
        previous_total=prev_total,
        variation=variation(cur_total, prev_total),
        current=current,
        previous=previous,
        decreasing=detect_decreasing(current, previous),
        new=detect_new(current, previous),
        lost=detect_lost(current, previous),
    )


def _provenance(item: SubQuery | QueryResult, result: QueryResult) -> Provenance:
    if isinstance(item, SubQuery):
        return Provenance(id=item.id, model=result.model or item.model, filters=item.filters, domain=result.domain)
    return Provenance(id=result.query_id, model=result.model, domain=result.domain)
