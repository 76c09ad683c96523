"""
Query executor -- one SubQuery in, one normalized QueryResult out.

Pipeline per sub-query:
  1. static grouping redirect (header model → line model)
  2. cache lookup by fingerprint
  3. effective domain (explicit domain, else filter builder output)
  4. state-completeness policy (auto-applied confirmed states)
  5. dispatch: search | count | aggregate | discover | inspect | distinct
  6. one-shot self-correction of rejected field names
  7. cache the successful payload

``execute`` never raises: remote, auth, deadline and unexpected failures
all come back as ``success=False`` results carrying the message.
Totals and group counts are always computed server-side over the full
domain, never approximated from a truncated page.
"""
from __future__ import annotations

import re
import time
from typing import Any

from erpcopilot.copilot.cache import ResultCache, fingerprint
from erpcopilot.copilot.filter_builder import build_domain, has_condition_on
from erpcopilot.copilot.spec import (
    METADATA_OPERATIONS,
    GroupStats,
    QueryResult,
    StateWarning,
    SubQuery,
)
from erpcopilot.core.config import get_settings
from erpcopilot.core.logging import get_logger
from erpcopilot.core.utils import Clock, Deadline, DeadlineExceeded, make_clock
from erpcopilot.erp.client import Domain, RecordClient
from erpcopilot.erp.rows import as_number, display_label, relation_id
from erpcopilot.governance.model_registry import ModelRegistry, ModelSpec, load_registry

logger = get_logger(__name__)

# Date granularities the server cannot group by reliably; dropped silently
_FINE_DATE_GRAINS = (":day", ":week", ":month")

DISTINCT_LIMIT = 100
STATE_GUARD_LIMIT = 20

_FIELD_ERROR_RES = (
    re.compile(r"(?:Invalid field|unknown field)[:\s]*['\"]?([\w.]+)['\"]?", re.IGNORECASE),
    re.compile(r"['\"]?([\w.]+)['\"]?\s+does not exist", re.IGNORECASE),
)

_TECHNICAL_FIELDS = frozenset({
    "id", "display_name", "create_uid", "write_uid", "write_date", "__last_update",
    "access_token", "access_url", "access_warning", "message_main_attachment_id",
})
_TECHNICAL_PREFIXES = ("__", "message_", "activity_", "website_message", "access_", "rating_")
_TECHNICAL_RELATIONS = frozenset({
    "mail.message", "mail.followers", "mail.activity", "ir.attachment", "rating.rating",
})
_AMOUNT_NAME_RE = re.compile(r"amount|price|total|revenue|cost|value|balance|residual|subtotal")

_FIELD_ATTRIBUTES = ["string", "type", "relation", "store", "required", "selection"]


def _is_technical(name: str, meta: dict[str, Any]) -> bool:
    if name in _TECHNICAL_FIELDS or name.startswith(_TECHNICAL_PREFIXES):
        return True
    return meta.get("relation") in _TECHNICAL_RELATIONS


class QueryExecutor:
    """Executes sub-queries against one record system.

    Parameters
    ----------
    client : RecordClient
        Record-system client (search_read / search_count / read_group / fields_get).
    cache : ResultCache
        Injected result cache shared by concurrent executions.
    registry : ModelRegistry | None
        Model configuration; defaults to the packaged registry.
    tenant_id : str | None
        Cache namespace; defaults to ``Settings.tenant_id``.
    clock : Clock | None
        Source of "now" for relative dates; defaults to the configured timezone.
    """

    def __init__(
        self,
        client: RecordClient,
        cache: ResultCache,
        registry: ModelRegistry | None = None,
        tenant_id: str | None = None,
        clock: Clock | None = None,
    ):
        self._client = client
        self._cache = cache
        self._registry = registry or load_registry()
        self._tenant_id = tenant_id or get_settings().tenant_id
        self._clock = clock or make_clock()

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Public API ──────────────────────────────────────

    def execute(self, query: SubQuery, deadline: Deadline | None = None) -> QueryResult:
        """Run one sub-query; failures are reported in the result, never raised."""
        t0 = time.perf_counter()
        deadline = deadline or Deadline()

        query = self._redirect(query)
        key = fingerprint(self._tenant_id, query)
        hit = self._cache.get(key)
        if hit is not None:
            logger.info("Cache hit | query=%s model=%s op=%s", query.id, query.model, query.operation)
            return hit.model_copy(
                update={"query_id": query.id, "cached": True, "elapsed_ms": _elapsed(t0)},
                deep=True,
            )

        domain: Domain = []
        try:
            spec = self._registry.lookup(query.model)
            domain = self.effective_domain(query, spec)
            logger.info(
                "Executing | query=%s model=%s op=%s domain=%s",
                query.id, query.model, query.operation, domain,
            )
            result = self._dispatch(query, spec, domain, deadline)
        except DeadlineExceeded as exc:
            logger.warning("Query %s stopped: %s", query.id, exc)
            return self._failure(query, domain, str(exc), t0)
        except Exception as exc:
            corrected = self._self_correct(query, exc)
            if corrected is not None:
                retried = self.execute(corrected, deadline)
                if retried.success:
                    self._cache.put(key, retried.model_copy(update={"cached": False}))
                return retried
            logger.exception("Query %s failed on %s", query.id, query.model)
            return self._failure(query, domain, str(exc), t0)

        result = result.model_copy(update={"elapsed_ms": _elapsed(t0)})
        self._cache.put(key, result)
        return result

    def effective_domain(self, query: SubQuery, spec: ModelSpec | None = None) -> Domain:
        """Resolved domain for *query*, including auto-applied states.

        Builds a new list every time; the SubQuery itself is never mutated,
        so repeated executions apply the state policy exactly once.
        """
        spec = spec or self._registry.lookup(query.model)
        today = self._clock().date()
        if query.domain:
            domain = [list(c) for c in query.domain]
            if query.date_range is not None and not has_condition_on(domain, spec.date_field):
                domain += build_domain(
                    "", query.model, query.date_range, registry=self._registry, today=today,
                )
        else:
            domain = build_domain(
                query.filters, query.model, query.date_range, registry=self._registry, today=today,
            )

        if (
            query.operation not in METADATA_OPERATIONS
            and spec.state_field
            and spec.auto_states
            and not has_condition_on(domain, spec.state_field)
        ):
            domain.append([spec.state_field, "in", list(spec.auto_states)])
            logger.info("Auto-applied %s in %s on %s", spec.state_field, list(spec.auto_states), query.model)
        return domain

    # ── Redirect / self-correction ──────────────────────

    def _redirect(self, query: SubQuery) -> SubQuery:
        if not query.group_by:
            return query
        target = self._registry.redirect_for_grouping(query.model, query.group_by)
        if not target:
            return query
        logger.info("Redirecting %s grouped by %s to %s", query.model, query.group_by, target)
        return query.model_copy(update={"model": target, "fields": []})

    def _self_correct(self, query: SubQuery, exc: Exception) -> SubQuery | None:
        if query.retried:
            return None
        message = str(exc)
        for pattern in _FIELD_ERROR_RES:
            m = pattern.search(message)
            if not m:
                continue
            bad = m.group(1)
            if bad.startswith(query.model + "."):
                bad = bad[len(query.model) + 1:]
            right = self._registry.suggest_field_correction(query.model, bad)
            if right:
                logger.info("Self-correcting field %r -> %r on %s (query=%s)", bad, right, query.model, query.id)
                return _rename_field(query, bad, right)
        return None

    # ── Dispatch ────────────────────────────────────────

    def _dispatch(self, query: SubQuery, spec: ModelSpec, domain: Domain, deadline: Deadline) -> QueryResult:
        op = query.operation
        if op == "search":
            result = self._search(query, spec, domain, deadline)
        elif op == "count":
            count = self._client.search_count(query.model, domain, timeout=deadline.check())
            result = self._success(query, domain, count=count)
        elif op == "aggregate":
            result = self._aggregate(query, spec, domain, deadline)
        elif op == "discover":
            result = self._discover(query, spec, deadline)
        elif op == "inspect":
            result = self._inspect(query, deadline)
        else:
            result = self._distinct(query, domain, deadline)

        if op not in METADATA_OPERATIONS and spec.guarded and not has_condition_on(domain, spec.state_field):
            warning = self._state_guard(query.model, spec, domain, deadline)
            if warning is not None:
                result = result.model_copy(update={"state_warning": warning})
        return result

    def _totals(self, model: str, amount_field: str | None, domain: Domain, deadline: Deadline) -> tuple[int, float]:
        """True record count and summed amount over the whole domain."""
        if not amount_field:
            count = self._client.search_count(model, domain, timeout=deadline.check())
            return count, float(count)
        rows = self._client.read_group(
            model, domain, [f"{amount_field}:sum"], [], lazy=False, timeout=deadline.check(),
        )
        if not rows:
            return 0, 0.0
        return int(rows[0].get("__count") or 0), as_number(rows[0].get(amount_field))

    def _search(self, query: SubQuery, spec: ModelSpec, domain: Domain, deadline: Deadline) -> QueryResult:
        fields = list(query.fields) or list(spec.default_fields)
        records = self._client.search_read(
            query.model, domain, fields, limit=query.limit, order=query.order_by, timeout=deadline.check(),
        )
        amount = spec.amount_field
        page_full = len(records) >= query.limit
        projected = not fields or (amount in fields)
        if page_full or (amount and not projected):
            count, total = self._totals(query.model, amount, domain, deadline)
        else:
            count = len(records)
            total = sum(as_number(r.get(amount)) for r in records) if amount else float(count)
        return self._success(query, domain, records=records, count=count, total=total)

    def _aggregate(self, query: SubQuery, spec: ModelSpec, domain: Domain, deadline: Deadline) -> QueryResult:
        amount = spec.amount_field
        groups = [g for g in query.group_by if not g.endswith(_FINE_DATE_GRAINS)]
        if len(groups) != len(query.group_by):
            logger.info("Dropped unsupported date groupings from %s", query.group_by)

        count, total = self._totals(query.model, amount, domain, deadline)
        if not groups:
            return self._success(query, domain, count=count, total=total, grouped={}, group_count=0, shown_groups=0)

        agg_fields = [f"{amount}:sum"] if amount else [groups[0].split(":", 1)[0]]
        all_groups = self._client.read_group(
            query.model, domain, agg_fields, groups, lazy=False, timeout=deadline.check(),
        )
        order = query.order_by or (f"{amount} desc" if amount else "__count desc")
        top = self._client.read_group(
            query.model, domain, agg_fields, groups,
            limit=query.limit, orderby=order, lazy=False, timeout=deadline.check(),
        )

        grouped: dict[str, GroupStats] = {}
        for row in top:
            label = " / ".join(
                display_label(row.get(g, row.get(g.split(":", 1)[0]))) for g in groups
            )
            row_count = int(row.get("__count") or 0)
            row_total = as_number(row.get(amount)) if amount else float(row_count)
            existing = grouped.get(label)
            if existing is not None:
                grouped[label] = GroupStats(
                    count=existing.count + row_count, total=existing.total + row_total, id=existing.id,
                )
            else:
                rid = relation_id(row.get(groups[0])) if len(groups) == 1 else None
                grouped[label] = GroupStats(count=row_count, total=row_total, id=rid)

        return self._success(
            query, domain, count=count, total=total,
            grouped=grouped, group_count=len(all_groups), shown_groups=len(grouped),
        )

    def _discover(self, query: SubQuery, spec: ModelSpec, deadline: Deadline) -> QueryResult:
        meta = self._client.fields_get(query.model, attributes=_FIELD_ATTRIBUTES, timeout=deadline.check())
        business = {n: m for n, m in meta.items() if not _is_technical(n, m)}
        date_fields = [n for n, m in business.items() if m.get("type") in ("date", "datetime")]
        amount_fields = [
            n for n, m in business.items()
            if m.get("type") == "monetary" or (m.get("type") == "float" and _AMOUNT_NAME_RE.search(n))
        ]
        relations = [
            {"name": n, "relation": m.get("relation"), "label": m.get("string", n)}
            for n, m in business.items() if m.get("type") == "many2one"
        ][:10]
        if spec.state_field and spec.state_field in meta:
            state_field = spec.state_field
        else:
            state_field = "state" if "state" in meta else None
        details = {
            "model": query.model,
            "date_fields": date_fields,
            "amount_fields": amount_fields,
            "relation_fields": relations,
            "state_field": state_field,
            "fields": list(business)[:20],
            "configured": {
                "date_field": spec.date_field,
                "amount_field": spec.amount_field,
                "state_field": spec.state_field,
                "registered": spec.registered,
            },
        }
        return self._success(query, [], details=details)

    def _inspect(self, query: SubQuery, deadline: Deadline) -> QueryResult:
        meta = self._client.fields_get(query.model, attributes=_FIELD_ATTRIBUTES, timeout=deadline.check())
        fields: dict[str, dict[str, Any]] = {}
        for name, m in meta.items():
            if _is_technical(name, m) or m.get("store") is False:
                continue
            info: dict[str, Any] = {
                "label": m.get("string", name),
                "type": m.get("type"),
                "required": bool(m.get("required")),
            }
            if m.get("relation"):
                info["relation"] = m["relation"]
            if m.get("selection"):
                info["values"] = [opt[0] for opt in m["selection"]]
            fields[name] = info
        return self._success(query, [], details={"model": query.model, "fields": fields})

    def _distinct(self, query: SubQuery, domain: Domain, deadline: Deadline) -> QueryResult:
        if not query.group_by:
            raise ValueError("'distinct' needs group_by with the field to histogram")
        field_name = query.group_by[0]
        rows = self._client.read_group(
            query.model, domain, [field_name], [field_name],
            limit=DISTINCT_LIMIT, orderby="__count desc", lazy=True, timeout=deadline.check(),
        )
        values: dict[str, int] = {}
        for row in rows:
            label = display_label(row.get(field_name))
            n = int(row.get(f"{field_name}_count") or row.get("__count") or 0)
            values[label] = values.get(label, 0) + n
        total_records = sum(values.values())
        details = {"field": field_name, "values": values, "total_records": total_records}
        return self._success(query, domain, count=total_records, details=details)

    # ── State discovery guard ───────────────────────────

    def _state_guard(self, model: str, spec: ModelSpec, domain: Domain, deadline: Deadline) -> StateWarning | None:
        state_field = spec.state_field
        try:
            rows = self._client.read_group(
                model, domain, [state_field], [state_field],
                limit=STATE_GUARD_LIMIT, lazy=True, timeout=deadline.check(),
            )
        except Exception as exc:
            logger.warning("State guard skipped for %s: %s", model, exc)
            return None

        distribution: dict[str, int] = {}
        for row in rows:
            label = display_label(row.get(state_field), default="unknown")
            distribution[label] = distribution.get(label, 0) + int(
                row.get(f"{state_field}_count") or row.get("__count") or 0
            )
        if not distribution:
            return None

        total_records = sum(distribution.values())
        summary = ", ".join(f"{k}: {v}" for k, v in distribution.items())
        hint = spec.confirmed_hint or "Specify the desired state explicitly."
        logger.info("State guard on %s: %s", model, summary)
        return StateWarning(
            message=(
                f"This query includes every {state_field} value ({', '.join(distribution)}); "
                "the total may include drafts or cancelled records."
            ),
            field=state_field,
            distribution=distribution,
            total_records=total_records,
            suggestion=f"{hint} Current distribution: {summary}.",
        )

    # ── Result helpers ──────────────────────────────────

    @staticmethod
    def _success(query: SubQuery, domain: Domain, **payload: Any) -> QueryResult:
        return QueryResult(
            query_id=query.id,
            model=query.model,
            operation=query.operation,
            success=True,
            domain=domain,
            **payload,
        )

    @staticmethod
    def _failure(query: SubQuery, domain: Domain, message: str, t0: float) -> QueryResult:
        return QueryResult(
            query_id=query.id,
            model=query.model,
            operation=query.operation,
            success=False,
            domain=domain,
            error=message,
            elapsed_ms=_elapsed(t0),
        )


# ── Module helpers ──────────────────────────────────────

def _elapsed(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


def _rename(name: str, bad: str, right: str) -> str:
    """Rename *bad* in a field path or ``field:grain`` spec."""
    if name == bad:
        return right
    for sep in (".", ":"):
        if name.startswith(bad + sep):
            return right + name[len(bad):]
    return name


def _rename_field(query: SubQuery, bad: str, right: str) -> SubQuery:
    word = re.compile(rf"\b{re.escape(bad)}\b")
    order_by = query.order_by
    if order_by:
        order_by = ", ".join(
            " ".join([_rename(part.split()[0], bad, right)] + part.split()[1:])
            for part in order_by.split(",") if part.strip()
        )
    return query.model_copy(update={
        "filters": word.sub(right, query.filters),
        "domain": [[_rename(c[0], bad, right), c[1], c[2]] for c in query.domain],
        "fields": [_rename(f, bad, right) for f in query.fields],
        "group_by": [_rename(g, bad, right) for g in query.group_by],
        "order_by": order_by,
        "retried": True,
    })
