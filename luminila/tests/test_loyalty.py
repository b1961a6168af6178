from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from luminila.app import loyalty
from luminila.app.loyalty import (
    DEFAULT_SETTINGS,
    DEFAULT_TIERS,
    max_redeemable_points,
    points_to_earn,
    redemption_value,
    tier_for_points,
)


def test_points_to_earn_floors_both_steps():
    # 1 unit per 100 spent, then the tier multiplier.
    assert points_to_earn(Decimal("1500"), 1) == 15
    assert points_to_earn(Decimal("1500"), 1, Decimal("1.25")) == 18
    assert points_to_earn(Decimal("1599.99"), 1, Decimal("2")) == 30
    assert points_to_earn(Decimal("99"), 1) == 0
    assert points_to_earn(None, 1) == 0


def test_redemption_caps():
    s = dict(DEFAULT_SETTINGS)
    assert redemption_value(400, s) == Decimal("100.00")
    # Half of a 1000 bill at 0.25/point.
    assert max_redeemable_points(Decimal("1000"), 5000, s) == 2000
    assert max_redeemable_points(Decimal("1000"), 300, s) == 300
    # Below the minimum balance nothing is redeemable.
    assert max_redeemable_points(Decimal("1000"), 99, s) == 0


def test_tier_for_points():
    assert tier_for_points(DEFAULT_TIERS, 0)["name"] == "Bronze"
    assert tier_for_points(DEFAULT_TIERS, 999)["name"] == "Bronze"
    assert tier_for_points(DEFAULT_TIERS, 1000)["name"] == "Silver"
    assert tier_for_points(DEFAULT_TIERS, 19999)["name"] == "Gold"
    assert tier_for_points(DEFAULT_TIERS, 250000)["name"] == "Platinum"
    assert tier_for_points([], 10) is None


def test_redeem_rejects_below_minimum(monkeypatch):
    monkeypatch.setattr(loyalty, "fetch_settings", lambda cur, company_id: dict(DEFAULT_SETTINGS))
    with pytest.raises(HTTPException) as exc_info:
        loyalty.redeem_points(object(), "c1", "cust1", 50, "sale", "s1")
    assert exc_info.value.status_code == 400
    assert "minimum 100 points" in str(exc_info.value.detail)


def test_redeem_rejects_non_positive_points():
    with pytest.raises(HTTPException) as exc_info:
        loyalty.redeem_points(object(), "c1", "cust1", 0, "sale", "s1")
    assert exc_info.value.status_code == 400


def test_earn_is_noop_when_program_inactive(monkeypatch):
    monkeypatch.setattr(loyalty, "fetch_settings", lambda cur, company_id: {**DEFAULT_SETTINGS, "is_active": False})
    out = loyalty.earn_points(object(), "c1", "cust1", Decimal("5000"), "sale", "s1")
    assert out["points_earned"] == 0


class _DummyCursor:
    def __init__(self, rows=None, all_rows=None):
        self._rows = list(rows or [])
        self._all_rows = list(all_rows or [])
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return self._all_rows.pop(0) if self._all_rows else []


_ACCOUNT = {"id": "a1", "customer_id": "cust1", "tier_name": "Bronze", "current_balance": 500}


@pytest.fixture
def active_program(monkeypatch):
    monkeypatch.setattr(loyalty, "fetch_settings", lambda cur, company_id: dict(DEFAULT_SETTINGS))
    monkeypatch.setattr(loyalty, "get_account", lambda cur, company_id, customer_id: dict(_ACCOUNT))
    monkeypatch.setattr(loyalty, "get_or_create_account", lambda cur, company_id, customer_id: dict(_ACCOUNT))
    monkeypatch.setattr(loyalty, "fetch_tiers", lambda cur, company_id: [dict(t) for t in DEFAULT_TIERS])


def test_redeem_loses_race_for_balance(active_program):
    # Ledger row inserted, then the guarded debit matches nothing.
    cur = _DummyCursor([{"id": "t1"}, None])
    with pytest.raises(HTTPException) as exc_info:
        loyalty.redeem_points(cur, "c1", "cust1", 400, "sale", "s1")
    assert exc_info.value.detail == "insufficient points balance"
    assert "current_balance >= %s" in cur.executed[1][0]
    assert cur.executed[1][1] == (400, 400, "a1", 400)


def test_replayed_redeem_is_a_duplicate(active_program):
    cur = _DummyCursor([None])
    out = loyalty.redeem_points(cur, "c1", "cust1", 400, "sale", "s1")
    assert out["duplicate"] is True
    assert out["redeemed"] is False
    assert out["new_balance"] == 500
    assert len(cur.executed) == 1


def test_replayed_earn_is_a_duplicate(active_program):
    cur = _DummyCursor([None])
    out = loyalty.earn_points(cur, "c1", "cust1", Decimal("2500"), "sale", "s1")
    assert out == {"points_earned": 0, "new_balance": 500, "duplicate": True}
    assert cur.executed[0][1][2:4] == ("earn", 25)


def test_adjust_refuses_negative_balance(active_program):
    cur = _DummyCursor([None])
    with pytest.raises(HTTPException) as exc_info:
        loyalty.adjust_points(cur, "c1", "cust1", -600, "correction")
    assert exc_info.value.detail == "adjustment would result in negative balance"
    assert not any("INSERT INTO loyalty_transactions" in sql for sql, _ in cur.executed)


def test_adjust_rejects_zero():
    with pytest.raises(HTTPException) as exc_info:
        loyalty.adjust_points(object(), "c1", "cust1", 0, "nothing")
    assert exc_info.value.detail == "adjustment must be non-zero"


def test_expire_points_takes_aged_credit_net_of_debits(monkeypatch):
    monkeypatch.setattr(loyalty, "fetch_settings", lambda cur, company_id: dict(DEFAULT_SETTINGS))
    scanned = [
        {"id": "a1", "current_balance": 500, "aged_credit": 800, "debits": 450},
        {"id": "a2", "current_balance": 100, "aged_credit": 300, "debits": 0},
        {"id": "a3", "current_balance": 50, "aged_credit": 40, "debits": 0},
        {"id": "a4", "current_balance": 80, "aged_credit": 100, "debits": 100},
    ]
    cur = _DummyCursor(
        rows=[
            {"id": "t1"}, {"current_balance": 150},  # a1 expires 350
            {"id": "t2"}, None,  # a2 balance moved under us
            None,  # a3 already expired today
        ],
        all_rows=[scanned],
    )
    expired = loyalty.expire_points(cur, "c1", as_of=datetime(2026, 10, 18, tzinfo=timezone.utc))
    assert expired == 350
    ledger = [params for sql, params in cur.executed if "INSERT INTO loyalty_transactions" in sql]
    assert [(p[1], p[3], p[5], p[6]) for p in ledger] == [
        ("a1", -350, "expiry", "2025-10-18"),
        ("a2", -100, "expiry", "2025-10-18"),
        ("a3", -40, "expiry", "2025-10-18"),
    ]
    assert ("DELETE FROM loyalty_transactions WHERE id=%s", ("t2",)) in cur.executed
    assert ("UPDATE loyalty_transactions SET balance_after=%s WHERE id=%s", (150, "t1")) in cur.executed


def test_expire_points_disabled_without_validity(monkeypatch):
    monkeypatch.setattr(loyalty, "fetch_settings", lambda cur, company_id: {**DEFAULT_SETTINGS, "points_validity_days": 0})
    cur = _DummyCursor()
    assert loyalty.expire_points(cur, "c1") == 0
    assert cur.executed == []


def test_refund_points_credits_once(active_program):
    cur = _DummyCursor([{"id": "t9"}, {"current_balance": 700}])
    out = loyalty.refund_points(cur, "c1", "cust1", 200, "sale_cancel", "s1")
    assert out == {"points": 200, "duplicate": False, "new_balance": 700}
    assert cur.executed[0][1][2:4] == ("adjust", 200)
    assert cur.executed[0][1][5:7] == ("sale_cancel", "s1")

    replay = loyalty.refund_points(_DummyCursor([None]), "c1", "cust1", 200, "sale_cancel", "s1")
    assert replay["duplicate"] is True
    assert replay["points"] == 0
