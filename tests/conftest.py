"""
Shared fixtures -- an in-memory record system standing in for Odoo.

``FakeOdooClient`` implements the four RecordClient operations over plain
Python records, evaluates AND-ed domains, and rejects unknown field names
with the same message shape the real server uses.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from erpcopilot.copilot.cache import ResultCache
from erpcopilot.core.utils import fixed_clock
from erpcopilot.erp.client import OdooError
from erpcopilot.erp.rows import Relation
from erpcopilot.governance.model_registry import load_registry

TZ = ZoneInfo("America/Argentina/Buenos_Aires")
NOW = datetime(2025, 1, 20, 12, 0, tzinfo=TZ)

ANA = Relation(1, "Ana Ruiz")
BOB = Relation(2, "Bob Stone")
ACME = Relation(10, "Acme Corp")
BETA = Relation(11, "Beta Ltd")
GAMMA = Relation(12, "Gamma SA")
DELTA = Relation(13, "Delta Inc")
WIDGET = Relation(100, "Widget")
GADGET = Relation(101, "Gadget")
GIZMO = Relation(102, "Gizmo")


# ── Field metadata ──────────────────────────────────────

def _f(ftype: str, string: str, **extra: Any) -> dict[str, Any]:
    return {"type": ftype, "string": string, "store": True, "required": False, **extra}


FIELDS: dict[str, dict[str, dict[str, Any]]] = {
    "sale.order": {
        "id": _f("integer", "ID"),
        "name": _f("char", "Order Reference", required=True),
        "partner_id": _f("many2one", "Customer", relation="res.partner", required=True),
        "user_id": _f("many2one", "Salesperson", relation="res.users"),
        "date_order": _f("datetime", "Order Date"),
        "amount_total": _f("monetary", "Total"),
        "amount_to_invoice": _f("monetary", "Amount to invoice", store=False),
        "state": _f("selection", "Status", selection=[
            ["draft", "Quotation"], ["sent", "Quotation Sent"], ["sale", "Sales Order"],
            ["done", "Locked"], ["cancel", "Cancelled"],
        ]),
        "create_date": _f("datetime", "Created on"),
        "create_uid": _f("many2one", "Created by", relation="res.users"),
        "message_ids": _f("one2many", "Messages", relation="mail.message"),
    },
    "sale.order.line": {
        "id": _f("integer", "ID"),
        "order_id": _f("many2one", "Order", relation="sale.order"),
        "product_id": _f("many2one", "Product", relation="product.product"),
        "product_uom_qty": _f("float", "Quantity"),
        "price_unit": _f("float", "Unit Price"),
        "price_subtotal": _f("monetary", "Subtotal"),
        "state": _f("selection", "Status"),
        "create_date": _f("datetime", "Created on"),
    },
    "stock.picking": {
        "id": _f("integer", "ID"),
        "name": _f("char", "Reference"),
        "partner_id": _f("many2one", "Contact", relation="res.partner"),
        "scheduled_date": _f("datetime", "Scheduled Date"),
        "date_done": _f("datetime", "Date of Transfer"),
        "state": _f("selection", "Status"),
        "picking_type_id": _f("many2one", "Operation Type", relation="stock.picking.type"),
        "origin": _f("char", "Source Document"),
    },
    "account.move": {
        "id": _f("integer", "ID"),
        "name": _f("char", "Number"),
        "partner_id": _f("many2one", "Partner", relation="res.partner"),
        "invoice_date": _f("date", "Invoice Date"),
        "amount_total": _f("monetary", "Total"),
        "amount_residual": _f("monetary", "Amount Due"),
        "state": _f("selection", "Status"),
        "payment_state": _f("selection", "Payment Status"),
        "move_type": _f("selection", "Type"),
    },
    "res.partner": {
        "id": _f("integer", "ID"),
        "name": _f("char", "Name"),
        "email": _f("char", "Email"),
        "phone": _f("char", "Phone"),
        "city": _f("char", "City"),
        "country_id": _f("many2one", "Country", relation="res.country"),
        "customer_rank": _f("integer", "Customer Rank"),
        "supplier_rank": _f("integer", "Supplier Rank"),
        "create_date": _f("datetime", "Created on"),
    },
}


# ── Records ─────────────────────────────────────────────

def _so(id_, name, partner, user, day, amount, state):
    return {
        "id": id_, "name": name, "partner_id": partner, "user_id": user,
        "date_order": day, "amount_total": amount, "state": state, "create_date": day,
    }


def default_records() -> dict[str, list[dict[str, Any]]]:
    return {
        "sale.order": [
            _so(1, "SO001", ACME, ANA, "2025-01-05", 1000.0, "sale"),
            _so(2, "SO002", BETA, BOB, "2025-01-10", 500.0, "sale"),
            _so(3, "SO003", ACME, ANA, "2025-01-12", 250.0, "done"),
            _so(4, "SO004", GAMMA, BOB, "2025-01-15", 9999.0, "draft"),
            _so(5, "SO005", BETA, False, "2025-01-18", 300.0, "cancel"),
            _so(6, "SO006", ACME, ANA, "2024-12-05", 400.0, "sale"),
            _so(7, "SO007", DELTA, BOB, "2024-12-20", 2000.0, "sale"),
        ],
        "sale.order.line": [
            {"id": 1, "order_id": Relation(1, "SO001"), "product_id": WIDGET, "product_uom_qty": 6,
             "price_unit": 100.0, "price_subtotal": 600.0, "state": "sale", "create_date": "2025-01-05"},
            {"id": 2, "order_id": Relation(1, "SO001"), "product_id": GADGET, "product_uom_qty": 4,
             "price_unit": 100.0, "price_subtotal": 400.0, "state": "sale", "create_date": "2025-01-05"},
            {"id": 3, "order_id": Relation(2, "SO002"), "product_id": WIDGET, "product_uom_qty": 5,
             "price_unit": 100.0, "price_subtotal": 500.0, "state": "sale", "create_date": "2025-01-10"},
            {"id": 4, "order_id": Relation(4, "SO004"), "product_id": GIZMO, "product_uom_qty": 1,
             "price_unit": 9999.0, "price_subtotal": 9999.0, "state": "draft", "create_date": "2025-01-15"},
        ],
        "stock.picking": [
            {"id": 1, "name": "WH/OUT/001", "partner_id": ACME, "scheduled_date": "2025-01-03",
             "date_done": "2025-01-04", "state": "done", "picking_type_id": False, "origin": "SO001"},
            {"id": 2, "name": "WH/OUT/002", "partner_id": BETA, "scheduled_date": "2025-01-11",
             "date_done": False, "state": "assigned", "picking_type_id": False, "origin": "SO002"},
            {"id": 3, "name": "WH/OUT/003", "partner_id": GAMMA, "scheduled_date": "2025-01-16",
             "date_done": False, "state": "cancel", "picking_type_id": False, "origin": "SO004"},
        ],
        "account.move": [
            {"id": 1, "name": "INV/2024/0001", "partner_id": ACME, "invoice_date": "2024-04-10",
             "amount_total": 1200.0, "amount_residual": 1200.0, "state": "posted",
             "payment_state": "not_paid", "move_type": "out_invoice"},
            {"id": 2, "name": "INV/2024/0002", "partner_id": BETA, "invoice_date": "2024-04-25",
             "amount_total": 800.0, "amount_residual": 0.0, "state": "posted",
             "payment_state": "paid", "move_type": "out_invoice"},
            {"id": 3, "name": "INV/2024/0003", "partner_id": ACME, "invoice_date": "2024-05-02",
             "amount_total": 500.0, "amount_residual": 500.0, "state": "posted",
             "payment_state": "not_paid", "move_type": "out_invoice"},
            {"id": 4, "name": "INV/2024/0004", "partner_id": GAMMA, "invoice_date": "2024-04-15",
             "amount_total": 300.0, "amount_residual": 300.0, "state": "draft",
             "payment_state": "not_paid", "move_type": "out_invoice"},
        ],
        "res.partner": [
            {"id": 10, "name": "Acme Corp", "email": "info@acme.test", "phone": False, "city": "Rosario",
             "country_id": False, "customer_rank": 3, "supplier_rank": 0, "create_date": "2024-06-01"},
            {"id": 11, "name": "Beta Ltd", "email": False, "phone": False, "city": "Salta",
             "country_id": False, "customer_rank": 2, "supplier_rank": 1, "create_date": "2024-07-01"},
            {"id": 12, "name": "Gamma SA", "email": False, "phone": False, "city": False,
             "country_id": False, "customer_rank": 0, "supplier_rank": 4, "create_date": "2024-08-01"},
        ],
    }


# ── Fake client ─────────────────────────────────────────

def _base(name: str) -> str:
    return name.split(":", 1)[0].split(".", 1)[0]


def _compare(value: Any, op: str, target: Any) -> bool:
    if isinstance(value, Relation):
        wants_id = isinstance(target, int) and not isinstance(target, bool)
        if isinstance(target, list) and target:
            wants_id = isinstance(target[0], int)
        value = value.id if wants_id else value.label
    if value is None:
        value = False
    if op == "=":
        return value == target
    if op == "!=":
        return value != target
    if op == "in":
        return value in target
    if op == "ilike":
        return isinstance(value, str) and str(target).lower() in value.lower()
    if value is False or isinstance(value, bool) or isinstance(value, str) != isinstance(target, str):
        return False
    return {
        ">": value > target, ">=": value >= target,
        "<": value < target, "<=": value <= target,
    }[op]


class FakeOdooClient:
    """In-memory RecordClient."""

    def __init__(
        self,
        records: dict[str, list[dict[str, Any]]] | None = None,
        fields: dict[str, dict[str, dict[str, Any]]] | None = None,
    ):
        self.records = records if records is not None else default_records()
        self.fields = fields if fields is not None else FIELDS
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_on: dict[str, Exception] = {}
        self._lock = threading.Lock()

    # ── helpers ─────────────────────────────────────────

    def _log(self, method: str, model: str, **kwargs: Any) -> None:
        with self._lock:
            self.calls.append((method, model, kwargs))
        if method in self.fail_on:
            raise self.fail_on[method]

    def calls_of(self, method: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.calls if c[0] == method]

    def _check_fields(self, model: str, names: list[str]) -> None:
        known = self.fields.get(model, {})
        for name in names:
            if _base(name) not in known:
                raise OdooError(f"Odoo RPC error: Invalid field '{_base(name)}' on model '{model}'")

    def _filter(self, model: str, domain: list[list[Any]]) -> list[dict[str, Any]]:
        self._check_fields(model, [c[0] for c in domain])
        rows = self.records.get(model, [])
        return [r for r in rows if all(_compare(r.get(_base(f)), op, v) for f, op, v in domain)]

    @staticmethod
    def _sort(rows: list[dict[str, Any]], order: str | None) -> list[dict[str, Any]]:
        if not order:
            return rows
        field_name, _, direction = order.split(",")[0].strip().partition(" ")
        reverse = direction.strip().lower() == "desc"

        def key(r: dict[str, Any]) -> Any:
            v = r.get(field_name)
            if isinstance(v, Relation):
                return (True, v.label)
            return (v is not False and v is not None, v if v is not False else 0)

        return sorted(rows, key=key, reverse=reverse)

    # ── RecordClient protocol ───────────────────────────

    def search_read(self, model, domain, fields, limit=None, order=None, timeout=None):
        self._log("search_read", model, domain=domain, fields=fields, limit=limit, order=order)
        self._check_fields(model, fields)
        rows = self._sort(self._filter(model, domain), order)
        if limit is not None:
            rows = rows[:limit]
        return [{"id": r["id"], **{f: r.get(f, False) for f in fields}} for r in rows]

    def search_count(self, model, domain, timeout=None):
        self._log("search_count", model, domain=domain)
        return len(self._filter(model, domain))

    def read_group(self, model, domain, fields, groupby, limit=None, orderby=None, lazy=True, timeout=None):
        self._log("read_group", model, domain=domain, fields=fields, groupby=groupby,
                  limit=limit, orderby=orderby, lazy=lazy)
        self._check_fields(model, list(fields) + list(groupby))
        rows = self._filter(model, domain)
        sums = [f.split(":", 1)[0] for f in fields if f.endswith(":sum")]

        if not groupby:
            out = {"__count": len(rows)}
            for s in sums:
                out[s] = sum(r.get(s) or 0 for r in rows) if rows else False
            return [out]

        keys = [_base(g) for g in (groupby[:1] if lazy else groupby)]
        count_key = f"{keys[0]}_count" if lazy else "__count"
        buckets: dict[tuple, list[dict[str, Any]]] = {}
        for r in rows:
            buckets.setdefault(tuple(r.get(k, False) for k in keys), []).append(r)

        out_rows = []
        for key, members in buckets.items():
            row: dict[str, Any] = dict(zip(keys, key))
            row[count_key] = len(members)
            for s in sums:
                row[s] = sum(m.get(s) or 0 for m in members)
            out_rows.append(row)

        if orderby:
            field_name, _, direction = orderby.partition(" ")
            sort_key = count_key if field_name == "__count" else field_name
            out_rows.sort(key=lambda r: r.get(sort_key) or 0, reverse=direction.strip().lower() == "desc")
        if limit is not None:
            out_rows = out_rows[:limit]
        return out_rows

    def fields_get(self, model, attributes=None, timeout=None):
        self._log("fields_get", model, attributes=attributes)
        if model not in self.fields:
            raise OdooError(f"Odoo RPC error: Object {model} doesn't exist")
        return {name: dict(meta) for name, meta in self.fields[model].items()}


# ── Fixtures ────────────────────────────────────────────

@pytest.fixture
def registry():
    return load_registry()


@pytest.fixture
def clock():
    return fixed_clock(NOW)


@pytest.fixture
def fake_client():
    return FakeOdooClient()


@pytest.fixture
def cache():
    return ResultCache(ttl=300, max_size=100)
