from decimal import Decimal

import pytest
from fastapi import HTTPException

from pydantic import ValidationError

from luminila.app.routers.orders import OrderInvoiceIn, assert_order_transition, compute_order_totals


def test_order_totals_apply_flat_discount_then_tax_then_shipping():
    items = [
        {"description": "Temple necklace", "quantity": 2, "unit_price": Decimal("1000"), "tax_rate": Decimal("3"), "discount_amount": Decimal("100")},
        {"description": "Oxidised jhumka", "quantity": 1, "unit_price": Decimal("350"), "tax_rate": Decimal("3")},
    ]
    lines, totals = compute_order_totals(items, shipping_charges=Decimal("50"))
    assert lines[0]["tax_amount"] == Decimal("57.00")
    assert lines[0]["total"] == Decimal("1957.00")
    assert lines[1]["discount_amount"] == Decimal("0.00")
    assert lines[1]["tax_amount"] == Decimal("10.50")
    assert totals["subtotal"] == Decimal("2350.00")
    assert totals["discount_total"] == Decimal("100.00")
    assert totals["tax_total"] == Decimal("67.50")
    assert totals["shipping_charges"] == Decimal("50.00")
    assert totals["total"] == Decimal("2367.50")


def test_order_line_discount_above_amount_names_the_line():
    items = [
        {"description": "a", "quantity": 1, "unit_price": Decimal("100")},
        {"description": "b", "quantity": 1, "unit_price": Decimal("100"), "discount_amount": Decimal("101")},
    ]
    with pytest.raises(HTTPException) as exc_info:
        compute_order_totals(items)
    assert exc_info.value.detail == "line 2: discount exceeds line amount"


def test_order_transitions():
    assert_order_transition("draft", "sent")
    assert_order_transition("sent", "draft")
    assert_order_transition("confirmed", "shipped")
    with pytest.raises(HTTPException) as exc_info:
        assert_order_transition("confirmed", "invoiced")
    assert "invoice endpoint" in str(exc_info.value.detail)
    with pytest.raises(HTTPException):
        assert_order_transition("delivered", "cancelled")
    with pytest.raises(HTTPException):
        assert_order_transition("shipped", "draft")


def test_order_invoice_input_normalises_gst_fields():
    data = OrderInvoiceIn(buyer_gstin="29aabcu9603r1zm", buyer_state_code="29", place_of_supply="7")
    assert data.buyer_gstin == "29AABCU9603R1ZM"
    assert data.buyer_state_code == "29"
    assert data.place_of_supply == "07"
    assert OrderInvoiceIn().place_of_supply is None


@pytest.mark.parametrize("field,value", [("place_of_supply", "Karnataka"), ("buyer_state_code", "99"), ("buyer_gstin", "29AABCU9603R1Z")])
def test_order_invoice_input_rejects_bad_gst_fields(field, value):
    with pytest.raises(ValidationError):
        OrderInvoiceIn(**{field: value})
