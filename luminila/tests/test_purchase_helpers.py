from decimal import Decimal

from luminila.app.routers.purchases import po_item_totals, po_totals, receipt_status


def test_po_item_totals():
    out = po_item_totals(10, Decimal("250"))
    assert out == {"taxable_amount": Decimal("2500.00"), "gst_amount": Decimal("75.00"), "total_price": Decimal("2575.00")}


def test_po_totals_include_shipping_and_discount():
    items = [
        {"quantity_ordered": 10, "unit_price": Decimal("250"), "gst_amount": Decimal("75")},
        {"quantity_ordered": 5, "unit_price": Decimal("99.99"), "gst_amount": Decimal("15")},
    ]
    out = po_totals(items, shipping=Decimal("100"), discount=Decimal("50"))
    assert out["subtotal"] == Decimal("2999.95")
    assert out["gst_amount"] == Decimal("90.00")
    assert out["total"] == Decimal("3139.95")


def test_receipt_status():
    assert receipt_status([{"quantity_ordered": 5, "quantity_received": 5}, {"quantity_ordered": 2, "quantity_received": 3}]) == "received"
    assert receipt_status([{"quantity_ordered": 5, "quantity_received": 1}, {"quantity_ordered": 2, "quantity_received": 0}]) == "partial"
    assert receipt_status([{"quantity_ordered": 5, "quantity_received": 0}]) == "sent"
    assert receipt_status([]) == "sent"
