"""
Unit tests -- Sub-query orchestrator (QueryService.ask).
"""
import threading

import pytest

from erpcopilot.copilot.service import QueryService, ToolPayload, ToolRequest
from erpcopilot.copilot.spec import SubQuery


@pytest.fixture
def service(fake_client, cache, registry, clock):
    return QueryService(fake_client, cache, registry=registry, tenant_id="test", clock=clock)


BY_SELLER_JANUARY = {
    "id": "q1", "model": "sale.order", "operation": "aggregate",
    "filters": "ventas de enero 2025", "group_by": ["user_id"],
}


# ── Fan-out / merge ─────────────────────────────────────

def test_results_keep_request_order_and_merge(service):
    payload = service.ask({"queries": [
        BY_SELLER_JANUARY,
        {"id": "q2", "model": "stock.picking", "operation": "count"},
    ]})
    assert isinstance(payload, ToolPayload)
    assert payload.success
    assert [r.query_id for r in payload.results] == ["q1", "q2"]
    assert payload.total == 1750.0
    assert payload.count == 6
    assert set(payload.grouped) == {"Ana Ruiz", "Bob Stone"}
    assert payload.results[1].state_warning is not None


def test_provenance_for_every_subquery(service):
    payload = service.ask({"queries": [BY_SELLER_JANUARY, {"id": "q2", "model": "res.partner", "filters": "clientes"}]})
    assert [(p.id, p.model) for p in payload.provenance] == [("q1", "sale.order"), ("q2", "res.partner")]
    assert payload.provenance[0].filters == "ventas de enero 2025"
    assert ["state", "in", ["sale", "done"]] in payload.provenance[0].domain
    assert payload.provenance[1].domain == [["customer_rank", ">", 0]]


def test_grouped_results_merge_by_key(service):
    payload = service.ask({"queries": [
        BY_SELLER_JANUARY,
        {**BY_SELLER_JANUARY, "id": "q2", "filters": "ventas de diciembre 2024"},
    ], "include_insights": False})
    assert payload.grouped["Ana Ruiz"].total == 1650.0
    assert payload.grouped["Ana Ruiz"].count == 3
    assert payload.grouped["Bob Stone"].total == 2500.0
    assert payload.total == 4150.0


def test_record_counts_stay_out_of_the_money_total(service):
    payload = service.ask({"queries": [
        BY_SELLER_JANUARY,
        {"id": "q2", "model": "res.partner"},
    ], "include_insights": False})
    sales, partners = payload.results
    assert sales.total == 1750.0
    assert partners.total == 3.0
    assert payload.total == 1750.0
    assert payload.count == 3 + 3


def test_subquery_objects_are_accepted(service):
    payload = service.ask(ToolRequest(queries=[SubQuery(model="sale.order", operation="count", filters="enero 2025")]))
    assert payload.count == 3


def test_records_are_concatenated(service):
    payload = service.ask({"queries": [
        {"id": "a", "model": "sale.order", "filters": "enero 2025"},
        {"id": "b", "model": "res.partner", "filters": "clientes"},
    ]})
    assert len(payload.records) == 5


# ── Validation and limits ───────────────────────────────

def test_invalid_entry_fails_alone(service):
    payload = service.ask({"queries": [
        {"model": "sale.order", "operation": "explode"},
        {"id": "q2", "model": "sale.order", "operation": "count", "filters": "enero 2025"},
    ]})
    bad, good = payload.results
    assert bad.success is False
    assert bad.query_id == "q1"
    assert bad.error.startswith("Invalid query")
    assert good.success and good.count == 3
    assert payload.success


def test_invalid_domain_operator_is_rejected(service):
    payload = service.ask({"queries": [{"model": "sale.order", "domain": [["state", "like", "sale"]]}]})
    assert payload.results[0].success is False
    assert payload.success is False


def test_extra_queries_are_dropped(service):
    payload = service.ask({"queries": [{"model": "res.partner", "operation": "count"}] * 7})
    assert len(payload.results) == 5
    assert len(payload.warnings) == 1


# ── Comparison ──────────────────────────────────────────

def test_comparison_scopes_current_period(service):
    payload = service.ask({
        "queries": [{"id": "q1", "model": "sale.order", "operation": "aggregate",
                     "group_by": ["user_id"], "compare": "mom"}],
        "include_comparison": True,
    })
    result = payload.results[0]
    assert ["date_order", ">=", "2025-01-01"] in result.domain
    block = payload.comparison
    assert block is not None
    assert block.current_label == "January 2025"
    assert block.previous_label == "December 2024"
    assert block.current_total == 1750.0
    assert block.previous_total == 2400.0
    assert block.variation.value == -650.0
    assert block.variation.trend == "down"
    assert [d.name for d in block.decreasing] == ["Bob Stone"]
    assert block.new == [] and block.lost == []
    assert result.comparison == block


def test_comparison_follows_the_requested_month(service):
    payload = service.ask({
        "queries": [{**BY_SELLER_JANUARY, "compare": "mom"}],
        "include_comparison": True,
    })
    assert payload.comparison.previous_total == 2400.0
    assert payload.comparison.previous["Bob Stone"].total == 2000.0


def test_comparison_feeds_insights(service):
    payload = service.ask({
        "queries": [{**BY_SELLER_JANUARY, "compare": "mom"}],
        "include_comparison": True,
    })
    titles = [i.title for i in payload.insights]
    assert "Decline" in titles
    assert "1 account buying less" in titles


def test_no_comparison_unless_requested(service, fake_client):
    payload = service.ask({"queries": [{**BY_SELLER_JANUARY, "compare": "mom"}]})
    assert payload.comparison is None
    assert not any(c[2].get("domain") and ["date_order", ">=", "2024-12-01"] in c[2]["domain"]
                   for c in fake_client.calls)


# ── Extras ──────────────────────────────────────────────

def test_chart_from_grouped_result(service):
    payload = service.ask({"queries": [BY_SELLER_JANUARY]})
    assert payload.chart["chart_type"] == "pie"
    assert payload.chart["labels"] == ["Ana Ruiz", "Bob Stone"]


def test_insights_can_be_disabled(service):
    payload = service.ask({"queries": [BY_SELLER_JANUARY], "include_insights": False})
    assert payload.insights is None


def test_second_ask_is_cached(service, fake_client):
    service.ask({"queries": [BY_SELLER_JANUARY]})
    n_calls = len(fake_client.calls)
    payload = service.ask({"queries": [BY_SELLER_JANUARY]})
    assert payload.cached is True
    assert len(fake_client.calls) == n_calls


def test_identical_subqueries_share_one_cache_entry(service):
    queries = [{**BY_SELLER_JANUARY, "id": f"q{i}"} for i in range(1, 6)]
    payload = service.ask({"queries": queries, "include_insights": False})
    assert [r.query_id for r in payload.results] == ["q1", "q2", "q3", "q4", "q5"]
    assert all(r.success and r.total == 1750.0 for r in payload.results)
    assert len(service.cache) == 1


def test_cancelled_request(service, fake_client):
    cancel = threading.Event()
    cancel.set()
    payload = service.ask({"queries": [BY_SELLER_JANUARY]}, cancel_event=cancel)
    assert payload.success is False
    assert payload.results[0].error == "Query cancelled by caller"
    assert fake_client.calls == []


def test_default_cache_is_created(fake_client, registry, clock):
    service = QueryService(fake_client, registry=registry, clock=clock)
    service.ask({"queries": [BY_SELLER_JANUARY]})
    assert len(service.cache) == 1
