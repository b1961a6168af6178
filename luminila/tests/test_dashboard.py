from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException

from luminila.app.routers import dashboard as dashboard_router
from luminila.app.routers.dashboard import (
    STORE_TZ,
    build_channel_breakdown,
    build_trend,
    day_start,
    percent_change,
    store_today,
    summary_start,
)


class _DummyCursor:
    def __init__(self, all_rows):
        self._all_rows = list(all_rows)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return self._all_rows.pop(0) if self._all_rows else []


class _DummyConn:
    def __init__(self, all_rows=()):
        self.cur = _DummyCursor(all_rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self.cur


@pytest.mark.parametrize(
    "current,previous,expected",
    [(150, 100, 50), (50, 100, -50), (Decimal("1"), Decimal("3"), -67), (10, 0, 0), (10, None, 0)],
)
def test_percent_change(current, previous, expected):
    assert percent_change(current, previous) == expected


def test_store_today_uses_store_timezone():
    # 20:00 UTC is already the next morning in the store.
    assert store_today(datetime.fromisoformat("2026-10-17T20:00:00+00:00")) == date(2026, 10, 18)


def test_trend_fills_missing_days_with_zero():
    rows = [{"day": date(2026, 10, 17), "revenue": Decimal("1500"), "orders": 2}]
    points = build_trend(rows, date(2026, 10, 16), 3)
    assert [p["date"] for p in points] == [date(2026, 10, 16), date(2026, 10, 17), date(2026, 10, 18)]
    assert [p["revenue"] for p in points] == [Decimal("0.00"), Decimal("1500.00"), Decimal("0.00")]
    assert [p["orders"] for p in points] == [0, 2, 0]


def test_channel_breakdown_labels_and_shares():
    rows = [
        {"channel": "shopify", "orders": 4, "revenue": Decimal("1000")},
        {"channel": "pos", "orders": 9, "revenue": Decimal("3000")},
        {"channel": None, "orders": 1, "revenue": Decimal("0")},
    ]
    out = build_channel_breakdown(rows)
    assert [c["channel"] for c in out] == ["In-Store (POS)", "Shopify", "Other"]
    assert [c["percentage"] for c in out] == [75, 25, 0]
    assert out[0]["revenue"] == Decimal("3000.00")


def test_channel_breakdown_with_no_revenue():
    out = build_channel_breakdown([{"channel": "whatsapp", "orders": 0, "revenue": None}])
    assert out == [{"channel": "WhatsApp", "orders": 0, "revenue": Decimal("0.00"), "percentage": 0}]


def test_summary_start_periods():
    now = datetime(2026, 3, 31, 15, 30, tzinfo=STORE_TZ)
    assert summary_start("today", now) == datetime(2026, 3, 31, tzinfo=STORE_TZ)
    assert summary_start("week", now) == datetime(2026, 3, 24, 15, 30, tzinfo=STORE_TZ)
    # No 31 February: the month window starts on its last day.
    assert summary_start("month", now) == datetime(2026, 2, 28, 15, 30, tzinfo=STORE_TZ)
    assert summary_start("year", now) == datetime(2025, 3, 31, 15, 30, tzinfo=STORE_TZ)


def test_summary_start_january_and_leap_day():
    assert summary_start("month", datetime(2026, 1, 15, tzinfo=STORE_TZ)) == datetime(2025, 12, 15, tzinfo=STORE_TZ)
    assert summary_start("year", datetime(2028, 2, 29, tzinfo=STORE_TZ)) == datetime(2027, 2, 28, tzinfo=STORE_TZ)


def test_summary_start_rejects_unknown_period():
    with pytest.raises(HTTPException) as exc_info:
        summary_start("quarter", datetime(2026, 10, 18, tzinfo=STORE_TZ))
    assert exc_info.value.status_code == 400
    assert "today, week, month, year" in exc_info.value.detail


@pytest.mark.parametrize("days", [0, -1, 367])
def test_sales_trend_rejects_out_of_range_window(monkeypatch, days):
    monkeypatch.setattr(dashboard_router, "get_conn", lambda: pytest.fail("must not reach the database"))
    with pytest.raises(HTTPException) as exc_info:
        dashboard_router.sales_trend(days=days, company_id="c1")
    assert exc_info.value.status_code == 400


def test_sales_trend_window_ends_today(monkeypatch):
    conn = _DummyConn([[{"day": date(2026, 10, 18), "revenue": Decimal("820"), "orders": 1}]])
    monkeypatch.setattr(dashboard_router, "get_conn", lambda: conn)
    monkeypatch.setattr(dashboard_router, "set_company_context", lambda conn, company_id: None)
    monkeypatch.setattr(dashboard_router, "store_today", lambda: date(2026, 10, 18))

    out = dashboard_router.sales_trend(days=3, company_id="c1")

    assert out["days"] == 3
    assert [p["revenue"] for p in out["points"]] == [Decimal("0.00"), Decimal("0.00"), Decimal("820.00")]
    _, params = conn.cur.executed[0]
    assert params["since"] == day_start(date(2026, 10, 16))
    assert params["tz"] == "Asia/Kolkata"
    assert params["company_id"] == "c1"


def test_top_products_limit_bounds():
    with pytest.raises(HTTPException):
        dashboard_router.top_products(limit=0, company_id="c1")
    with pytest.raises(HTTPException):
        dashboard_router.top_products(limit=101, company_id="c1")
