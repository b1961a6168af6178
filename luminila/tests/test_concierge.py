from decimal import Decimal

import pytest
from fastapi import HTTPException

from luminila.app import concierge
from luminila.app.concierge import (
    ADMIN_HELP,
    auto_reply,
    cart_summary_message,
    chat_phone,
    format_inr,
    handle_inbound,
    is_admin,
    order_confirmation_message,
    parse_order_intent,
    process_admin_command,
    shipping_update_message,
)

ADMINS = ["9876543210"]
ADMIN_CHAT = "919876543210@c.us"
SALE_ID = "ab12cdef-0000-4000-8000-000000000001"


class _DummyCursor:
    def __init__(self, rows=None, all_rows=None):
        self._rows = list(rows or [])
        self._all_rows = list(all_rows or [])
        self.executed = []
        self.rowcount = 1

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return self._all_rows.pop(0) if self._all_rows else []


def _sale(**overrides):
    sale = {"id": SALE_ID, "status": "pending", "payment_status": "unpaid", "total": Decimal("2499.00")}
    sale.update(overrides)
    return sale


def test_format_inr_uses_indian_grouping():
    assert format_inr(Decimal("123456.7")) == "₹1,23,457"
    assert format_inr(999) == "₹999"
    assert format_inr(1000) == "₹1,000"
    assert format_inr(10000000) == "₹1,00,00,000"
    assert format_inr(-1500) == "-₹1,500"
    assert format_inr(None) == "₹0"


def test_chat_phone():
    assert chat_phone("919876543210@c.us") == "919876543210"
    assert chat_phone("") == ""


def test_parse_order_intent():
    out = parse_order_intent("I want to buy LUM-EAR-001-gld and a necklace")
    assert out["is_order"] is True
    assert out["intent"] == "purchase"
    assert out["skus"] == ["LUM-EAR-001-GLD"]
    assert out["items"] == ["LUM-EAR-001-GLD", "necklace"]

    out = parse_order_intent("what is the price of your bracelets?")
    assert out["is_order"] is False
    assert out["intent"] == "inquiry"
    assert out["items"] == ["bracelet"]


def test_auto_reply_priority():
    products = [{"name": "Kundan Choker", "price": Decimal("2499")}]
    reply = auto_reply("Hi, what is the price?", products, "Luminila", "https://luminila.com/collections")
    assert reply.startswith("Here are our popular items")
    assert "• Kundan Choker: ₹2,499" in reply
    assert "Welcome to Luminila" in auto_reply("hello", products, "Luminila", "x")
    assert "in stock" in auto_reply("do you have jhumkas?", products, "Luminila", "x")
    assert "https://luminila.com/collections" in auto_reply("show me the catalog", products, "Luminila", "https://luminila.com/collections")
    assert auto_reply("ok thanks", products, "Luminila", "x") is None


def test_message_builders():
    msg = order_confirmation_message("ab12cdef", [{"name": "Kundan Choker", "quantity": 1, "price": Decimal("2499")}], Decimal("2499"), "Luminila")
    assert "Order ID: *ab12cdef*" in msg
    assert "• Kundan Choker x1 - ₹2,499" in msg
    assert "*Total: ₹2,499*" in msg

    msg = shipping_update_message("ab12cdef", "Luminila", tracking_id="DLV123")
    assert "Tracking ID: DLV123" in msg
    assert "Expected Delivery" not in msg

    assert cart_summary_message({"items": [], "total": Decimal("0")}, "Luminila").startswith("Your cart is empty")


def test_non_admin_commands_are_ignored():
    cur = _DummyCursor()
    assert process_admin_command(cur, "c1", "!paid ab12", "911111111111@c.us", ADMINS) is None
    assert process_admin_command(cur, "c1", "paid ab12", ADMIN_CHAT, ADMINS) is None
    assert cur.executed == []


def test_admin_help_and_unknown():
    cur = _DummyCursor()
    assert process_admin_command(cur, "c1", "!help", ADMIN_CHAT, ADMINS) == ADMIN_HELP
    assert process_admin_command(cur, "c1", "!refund ab12", ADMIN_CHAT, ADMINS) is None
    assert process_admin_command(cur, "c1", "!paid", ADMIN_CHAT, ADMINS) == "⚠️ Please provide an Order ID (e.g., !paid a1b2)"


def test_admin_command_unknown_order():
    cur = _DummyCursor([None])
    assert process_admin_command(cur, "c1", "!status ffff", ADMIN_CHAT, ADMINS) == '❌ Order matching "ffff" not found.'
    assert cur.executed[0][1] == ("c1", "ffff%")


def test_admin_paid(monkeypatch):
    calls = []
    monkeypatch.setattr(concierge, "mark_sale_paid", lambda cur, cid, sid: calls.append(sid))
    cur = _DummyCursor([_sale()])
    assert process_admin_command(cur, "c1", "!paid AB12", ADMIN_CHAT, ADMINS) == "✅ Order #ab12cdef marked as *PAID*."
    assert calls == [SALE_ID]


def test_admin_ship_reports_transition_errors(monkeypatch):
    def fail(cur, cid, sid, status):
        raise HTTPException(status_code=400, detail="cannot move sale from cancelled to shipped")

    monkeypatch.setattr(concierge, "set_sale_status", fail)
    cur = _DummyCursor([_sale(status="cancelled")])
    out = process_admin_command(cur, "c1", "!ship ab12", ADMIN_CHAT, ADMINS)
    assert out == "⚠️ Error executing command: cannot move sale from cancelled to shipped"


def test_admin_status():
    cur = _DummyCursor([_sale(status="confirmed", payment_status="paid")])
    out = process_admin_command(cur, "c1", "!status ab12", ADMIN_CHAT, ADMINS)
    assert out == "ℹ️ Order #ab12cdef\nStatus: confirmed\nPayment: paid\nTotal: ₹2,499"


def test_inbound_ignores_own_and_group_messages():
    cur = _DummyCursor()
    assert handle_inbound(cur, "c1", {"body": "hi", "from": ADMIN_CHAT, "from_me": True}, "Luminila", "x", ADMINS) is None
    assert handle_inbound(cur, "c1", {"body": "hi", "from": "123@g.us", "is_group_msg": True}, "Luminila", "x", ADMINS) is None
    assert cur.executed == []


def test_inbound_greeting_gets_auto_reply():
    cur = _DummyCursor(all_rows=[[{"name": "Kundan Choker", "sku": "LUM-NCK-010", "price": Decimal("2499")}]])
    out = handle_inbound(cur, "c1", {"body": "Hello", "from": "911111111111@c.us"}, "Luminila", "x", ADMINS)
    assert "Welcome to Luminila" in out


def test_inbound_order_with_sku_fills_cart():
    cur = _DummyCursor(
        rows=[{"id": "v1", "product_id": "p1"}],
        all_rows=[
            [],  # cart after insert (not inspected)
            [
                {
                    "variant_id": "v1",
                    "quantity": 1,
                    "product_id": "p1",
                    "product_name": "Pearl Drop Earrings",
                    "sku": "LUM-EAR-001-GLD",
                    "variant_name": "Gold",
                    "unit_price": Decimal("1299"),
                    "stock_level": 4,
                }
            ],
        ],
    )
    out = handle_inbound(cur, "c1", {"body": "I want LUM-EAR-001-GLD", "from": "911111111111@c.us"}, "Luminila", "x", ADMINS)
    assert "Pearl Drop Earrings (Gold) x1 - ₹1,299" in out
    assert "Reply *confirm*" in out
    insert_sql, insert_params = cur.executed[1]
    assert "INSERT INTO whatsapp_cart_items" in insert_sql
    assert insert_params == ("c1", "911111111111@c.us", "v1", 1)


def test_checkout_empty_cart_rejected():
    with pytest.raises(HTTPException) as exc_info:
        concierge.checkout(_DummyCursor(), "c1", "911111111111@c.us", "Luminila")
    assert exc_info.value.detail == "cart is empty"


def test_admin_phone_must_match_whole_number():
    assert is_admin("919876543210@c.us", ["9876543210"])
    assert is_admin("9876543210@c.us", ["9876543210"])
    assert is_admin("919876543210@c.us", ["+91 98765 43210"])
    assert not is_admin("919876543210@c.us", ["76543210"])
    assert not is_admin("919876543210@c.us", ["0"])
    assert not is_admin("12349876543210@c.us", ["9876543210"])
    assert not is_admin("919876543210@c.us", [""])


def test_sale_prefix_wildcards_are_literal():
    cur = _DummyCursor([None])
    process_admin_command(cur, "c1", "!status a%_b", ADMIN_CHAT, ADMINS)
    assert cur.executed[0][1] == ("c1", "a\\%\\_b%")
