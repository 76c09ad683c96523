"""
Unit tests -- Odoo JSON-RPC client (httpx MockTransport, no network).
"""
import json

import httpx
import pytest

from erpcopilot.erp.client import OdooAuthError, OdooClient, OdooError
from erpcopilot.erp.rows import Relation


class FakeOdooServer:
    """Records JSON-RPC calls and answers them from a method table."""

    def __init__(self, uid=7, responses=None, error=None, status=200):
        self.uid = uid
        self.responses = responses or {}
        self.error = error
        self.status = status
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        params = body["params"]
        self.calls.append(params)
        if self.status != 200:
            return httpx.Response(self.status, request=request)
        if params["service"] == "common":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.uid})
        if self.error:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.error})
        method = params["args"][4]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.responses.get(method)})


def _client(server):
    http = httpx.Client(transport=httpx.MockTransport(server))
    return OdooClient("http://odoo.test/", "prod", "bot@example.com", "secret", http=http)


# ── Authentication ──────────────────────────────────────

def test_authenticates_lazily_once():
    server = FakeOdooServer(responses={"search_count": 4})
    client = _client(server)
    assert server.calls == []
    assert client.search_count("sale.order", []) == 4
    assert client.search_count("sale.order", [["state", "=", "sale"]]) == 4
    assert [c["service"] for c in server.calls] == ["common", "object", "object"]
    assert server.calls[0]["args"] == ["prod", "bot@example.com", "secret", {}]


def test_rejected_credentials():
    client = _client(FakeOdooServer(uid=False))
    with pytest.raises(OdooAuthError):
        client.search_count("sale.order", [])


# ── Calls ───────────────────────────────────────────────

def test_execute_kw_payload_shape():
    server = FakeOdooServer(responses={"search_read": []})
    client = _client(server)
    client.search_read("sale.order", [["state", "=", "sale"]], ["name"], limit=5, order="date_order desc")
    args = server.calls[-1]["args"]
    assert args[:5] == ["prod", 7, "secret", "sale.order", "search_read"]
    assert args[5] == [[["state", "=", "sale"]]]
    assert args[6] == {"fields": ["name"], "limit": 5, "order": "date_order desc"}


def test_search_read_decodes_rows():
    server = FakeOdooServer(responses={"search_read": [
        {"id": 1, "partner_id": [10, "Acme Corp"], "user_id": False, "tag_ids": [3, 4], "amount_total": 12.5},
    ]})
    row = _client(server).search_read("sale.order", [], ["partner_id", "user_id", "tag_ids", "amount_total"])[0]
    assert row["partner_id"] == Relation(10, "Acme Corp")
    assert row["user_id"] is False
    assert row["tag_ids"] == [3, 4]
    assert row["amount_total"] == 12.5


def test_read_group_kwargs():
    server = FakeOdooServer(responses={"read_group": [{"user_id": [1, "Ana"], "__count": 2, "amount_total": 10.0}]})
    rows = _client(server).read_group(
        "sale.order", [], ["amount_total:sum"], ["user_id"], limit=3, orderby="amount_total desc", lazy=False,
    )
    assert rows[0]["user_id"] == Relation(1, "Ana")
    assert server.calls[-1]["args"][6] == {
        "fields": ["amount_total:sum"], "groupby": ["user_id"], "lazy": False,
        "limit": 3, "orderby": "amount_total desc",
    }


def test_fields_get():
    server = FakeOdooServer(responses={"fields_get": {"name": {"type": "char"}}})
    assert _client(server).fields_get("sale.order", attributes=["type"]) == {"name": {"type": "char"}}
    assert server.calls[-1]["args"][6] == {"attributes": ["type"]}


# ── Errors ──────────────────────────────────────────────

def test_rpc_error_message_is_surfaced():
    server = FakeOdooServer(error={"code": 200, "message": "Odoo Server Error",
                                   "data": {"message": "Invalid field 'seller_id' on model 'sale.order'"}})
    with pytest.raises(OdooError, match="Invalid field 'seller_id'"):
        _client(server).search_count("sale.order", [["seller_id", "=", 1]])


def test_http_error():
    with pytest.raises(OdooError, match="HTTP error"):
        _client(FakeOdooServer(status=502)).search_count("sale.order", [])


def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = OdooClient("http://odoo.test", "prod", "bot", "secret",
                        http=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(OdooError, match="timed out"):
        client.search_count("sale.order", [], timeout=0.5)


def test_context_manager_closes_http_client():
    server = FakeOdooServer()
    with _client(server) as client:
        http = client._http
    assert http.is_closed
