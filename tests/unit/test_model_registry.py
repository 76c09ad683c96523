"""
Unit tests -- Model configuration registry.
"""
import pytest

from erpcopilot.governance.model_registry import ModelSpec, load_registry, lookup


@pytest.fixture(scope="module")
def reg():
    return load_registry()


# ── Loading ─────────────────────────────────────────────

def test_registry_loads(reg):
    assert reg.version == 1
    assert len(reg.models) >= 12


def test_registry_is_cached():
    assert load_registry() is load_registry()


def test_core_models_registered(reg):
    names = reg.get_model_names()
    for model in ("sale.order", "sale.order.line", "purchase.order", "account.move",
                  "account.payment", "res.partner", "crm.lead", "res.users", "mail.activity"):
        assert model in names


# ── Model specs ─────────────────────────────────────────

def test_sale_order_spec(reg):
    spec = reg.lookup("sale.order")
    assert spec.date_field == "date_order"
    assert spec.amount_field == "amount_total"
    assert spec.state_field == "state"
    assert spec.auto_states == ("sale", "done")
    assert spec.insight_type == "sales"
    assert "amount_total" in spec.default_fields


def test_invoice_spec(reg):
    spec = reg.lookup("account.move")
    assert spec.date_field == "invoice_date"
    assert spec.amount_field == "amount_total"
    assert spec.auto_states == ("posted",)
    assert [g.name for g in spec.semantic_filters] == ["payment_state", "move_type"]


def test_partner_has_no_amount_or_state(reg):
    spec = reg.lookup("res.partner")
    assert spec.amount_field is None
    assert spec.state_field is None
    assert not spec.guarded


def test_picking_is_guarded_without_auto_states(reg):
    spec = reg.lookup("stock.picking")
    assert spec.auto_states == ()
    assert spec.guarded


def test_crm_stage_not_guarded(reg):
    spec = reg.lookup("crm.lead")
    assert spec.state_field == "stage_id"
    assert spec.guarded is False


def test_state_keywords_are_ordered_and_case_insensitive(reg):
    spec = reg.lookup("sale.order")
    first = spec.state_keywords[0]
    assert first.state == "draft"
    assert first.pattern.search("Show me QUOTATIONS")


def test_unknown_model_gets_conservative_default(reg):
    spec = reg.lookup("x.custom.model")
    assert isinstance(spec, ModelSpec)
    assert spec.registered is False
    assert spec.date_field == "create_date"
    assert spec.amount_field is None
    assert spec.state_field is None
    assert spec.default_fields == ()


def test_module_level_lookup():
    assert lookup("sale.order").date_field == "date_order"


# ── Corrections and redirects ───────────────────────────

def test_field_correction(reg):
    assert reg.suggest_field_correction("sale.order", "seller_id") == "user_id"
    assert reg.suggest_field_correction("account.move", "date") == "invoice_date"


def test_field_correction_unknown(reg):
    assert reg.suggest_field_correction("sale.order", "nonsense") is None
    assert reg.suggest_field_correction("x.model", "seller_id") is None


def test_grouping_redirect(reg):
    assert reg.redirect_for_grouping("sale.order", ["product_id"]) == "sale.order.line"
    assert reg.redirect_for_grouping("purchase.order", ["partner_id", "product_id"]) == "purchase.order.line"


def test_grouping_redirect_ignores_grain_suffix(reg):
    assert reg.redirect_for_grouping("sale.order", ["product_id:month"]) == "sale.order.line"


def test_no_redirect_for_header_fields(reg):
    assert reg.redirect_for_grouping("sale.order", ["user_id"]) is None
    assert reg.redirect_for_grouping("sale.order.line", ["product_id"]) is None
