from decimal import Decimal

import pytest
from fastapi import HTTPException

from luminila.app.routers import sales as sales_router
from luminila.app.routers.sales import assert_sale_transition, create_sale


class _DummyCursor:
    def __init__(self, rows):
        self._rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return []


def test_forward_transitions_allowed():
    assert_sale_transition("pending", "confirmed")
    assert_sale_transition("confirmed", "shipped")
    assert_sale_transition("shipped", "delivered")
    assert_sale_transition("delivered", "completed")
    # Same status is a no-op.
    assert_sale_transition("completed", "completed")


@pytest.mark.parametrize("current,target", [("completed", "pending"), ("cancelled", "confirmed"), ("shipped", "cancelled")])
def test_backward_or_terminal_transitions_rejected(current, target):
    with pytest.raises(HTTPException) as exc_info:
        assert_sale_transition(current, target)
    assert exc_info.value.status_code == 400
    assert f"cannot move sale from {current} to {target}" in str(exc_info.value.detail)


def test_create_sale_with_unmatched_line_skips_stock(monkeypatch):
    calls = []
    monkeypatch.setattr(sales_router, "change_stock", lambda *a, **k: calls.append((a, k)))
    cur = _DummyCursor([{"id": "s1"}])
    out = create_sale(
        cur,
        "c1",
        "shopify",
        [{"variant_id": None, "quantity": 2, "unit_price": Decimal("450"), "description": "Pearl studs"}],
        status="pending",
        channel_order_id="gid://shopify/Order/1",
    )
    assert out["id"] == "s1"
    assert out["subtotal"] == Decimal("900.00")
    assert out["total"] == Decimal("900.00")
    assert calls == []
    item_sql, item_params = cur.executed[1]
    assert "INSERT INTO sale_items" in item_sql
    assert item_params[2] is None


def test_create_sale_decrements_stock_per_line(monkeypatch):
    calls = []
    monkeypatch.setattr(sales_router, "change_stock", lambda cur, cid, vid, mode, qty, *a, **k: calls.append((vid, mode, qty)))
    cur = _DummyCursor([{"id": "s1"}])
    out = create_sale(
        cur,
        "c1",
        "pos",
        [{"variant_id": "v1", "quantity": 1, "unit_price": Decimal("1200"), "description": "Kundan choker"}],
        discount=Decimal("200"),
    )
    assert out["total"] == Decimal("1000.00")
    assert calls == [("v1", "decrement", 1)]


def test_replayed_channel_order_returns_none(monkeypatch):
    monkeypatch.setattr(sales_router, "change_stock", lambda *a, **k: pytest.fail("stock must not move on replay"))
    cur = _DummyCursor([None])
    out = create_sale(
        cur,
        "c1",
        "woocommerce",
        [{"variant_id": "v1", "quantity": 1, "unit_price": Decimal("10"), "description": "x"}],
        channel_order_id="42",
    )
    assert out is None


def test_line_without_variant_needs_price():
    with pytest.raises(HTTPException) as exc_info:
        create_sale(_DummyCursor([]), "c1", "pos", [{"variant_id": None, "quantity": 1}])
    assert "unit_price is required" in str(exc_info.value.detail)


def test_discount_cannot_exceed_subtotal():
    with pytest.raises(HTTPException) as exc_info:
        create_sale(
            _DummyCursor([]),
            "c1",
            "pos",
            [{"variant_id": None, "quantity": 1, "unit_price": Decimal("100"), "description": "x"}],
            discount=Decimal("150"),
        )
    assert exc_info.value.detail == "discount exceeds sale subtotal"


def test_empty_sale_rejected():
    with pytest.raises(HTTPException):
        create_sale(_DummyCursor([]), "c1", "pos", [])


def _confirmed_sale(redeemed):
    return {"id": "s1", "status": "confirmed", "customer_id": "cust1", "total": Decimal("1400.00"), "channel": "pos", "loyalty_points_redeemed": redeemed}


def test_cancel_refunds_redeemed_points(monkeypatch):
    refunds = []
    monkeypatch.setattr(sales_router, "change_stock", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "write_audit", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "refund_points", lambda cur, cid, customer_id, points, ref_type, ref_id: refunds.append((customer_id, points, ref_type, ref_id)))
    cur = _DummyCursor([_confirmed_sale(400)])
    out = sales_router.set_sale_status(cur, "c1", "s1", "cancelled", user_id="u1")
    assert out["changed"] is True
    assert refunds == [("cust1", 400, "sale_cancel", "s1")]


def test_cancel_without_redemption_leaves_ledger_alone(monkeypatch):
    monkeypatch.setattr(sales_router, "change_stock", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "write_audit", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "refund_points", lambda *a, **k: pytest.fail("nothing was redeemed"))
    sales_router.set_sale_status(_DummyCursor([_confirmed_sale(0)]), "c1", "s1", "cancelled")


def test_cancelling_twice_refunds_once(monkeypatch):
    refunds = []
    monkeypatch.setattr(sales_router, "change_stock", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "write_audit", lambda *a, **k: None)
    monkeypatch.setattr(sales_router, "refund_points", lambda *a, **k: refunds.append(a))
    sales_router.set_sale_status(_DummyCursor([_confirmed_sale(400)]), "c1", "s1", "cancelled")
    again = sales_router.set_sale_status(_DummyCursor([{**_confirmed_sale(400), "status": "cancelled"}]), "c1", "s1", "cancelled")
    assert again["changed"] is False
    assert len(refunds) == 1
